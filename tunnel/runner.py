"""
Tunnel runner: polls the remote queue and dispatches jobs to local providers.

Each received job runs as its own asyncio task; polling never waits for
it. Every job ends in exactly one submit_result call, whatever happens
inside the provider.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from shared.schemas import ChatOptions, GenerationOptions, JobRequest, JobResult, ModelRecord, ProgressEvent
from tunnel.config import RunnerConfig
from tunnel.errors import ErrorKind, ModelNotFoundError, TunnelError, UnsupportedRequestError
from tunnel.logging_utils import get_logger
from tunnel.providers.base import GenerativeProvider, Provider, TextProvider
from tunnel.providers.registry import build_model_map, discover_all_models
from tunnel.queue_api import QueueClient

log = logging.getLogger("tunnel.runner")


class ProgressThrottle:
    """
    Rate limit for progress submissions: at most one per ``interval_s``.
    Generation steps that go backwards are dropped.
    """

    def __init__(self, interval_s: float = 0.1, clock: Callable[[], float] = time.monotonic):
        self.interval_s = interval_s
        self.clock = clock
        self._last_sent: Optional[float] = None
        self.last_step = -1
        self.last_total = 0
        self.seen = False

    def ready(self) -> bool:
        now = self.clock()
        if self._last_sent is not None and now - self._last_sent < self.interval_s:
            return False
        self._last_sent = now
        return True

    def accept(self, event: ProgressEvent) -> bool:
        """Record a generation event; True if it should be sent now."""
        self.seen = True
        self.last_total = max(self.last_total, event.total_steps)
        if event.step < self.last_step:
            return False
        if not self.ready():
            return False
        self.last_step = event.step
        return True


class TunnelRunner:
    def __init__(
        self,
        queue: QueueClient,
        providers: Sequence[Provider],
        settings: Optional[RunnerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.providers = list(providers)
        self.settings = settings or RunnerConfig()
        self.clock = clock

        self.models: List[ModelRecord] = []
        self.model_map: Dict[str, Provider] = {}
        self.active = 0
        self.completed = 0
        self.failed = 0
        self.started_at: Optional[float] = None

        self._tasks: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self.slog = get_logger()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def poll_model_ids(self) -> List[str]:
        return list(self.model_map)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def start(self) -> bool:
        """Discover models and register them. False when there is nothing to serve."""
        self.models = await discover_all_models(self.providers)
        runnable = [m for m in self.models if not m.status_hint]
        self.model_map = build_model_map(self.providers, runnable)

        if not self.model_map:
            log.warning(
                "No local models found. Make sure a provider is running "
                "(Ollama: `ollama serve`, LM Studio: start the local server, "
                "Stable Diffusion WebUI or ComfyUI: start with --api / --listen)."
            )
            return False

        for record in self.models:
            log.info(
                "  %-40s %-16s %-6s %s",
                record.name, record.provider, record.capability, record.status_hint or "",
            )

        if self.settings.sync_models:
            try:
                await self.queue.sync_models(self.models)
                self.slog.info("models_synced", model_count=len(self.models))
            except TunnelError as e:
                self.slog.warning("models_sync_failed", error=e.message, error_kind=e.kind.value)
        return True

    async def run(self) -> None:
        if not await self.start():
            return

        self.started_at = self.clock()
        self.slog.info(
            "runner_started",
            models=self.poll_model_ids,
            providers=sorted({p.name for p in self.model_map.values()}),
        )
        try:
            while not self.stopping:
                try:
                    request = await self._next_request()
                except Exception as e:
                    if self.stopping:
                        break
                    self.slog.warning(
                        "poll_failed",
                        error=getattr(e, "message", None) or str(e) or type(e).__name__,
                        error_kind=e.kind.value if isinstance(e, TunnelError) else ErrorKind.INTERNAL.value,
                        backoff_s=self.settings.poll_backoff_s,
                    )
                    await self._backoff()
                    continue
                if request is not None:
                    self.dispatch(request)
        finally:
            await self.shutdown()

    def stop(self) -> None:
        if not self.stopping:
            log.info("Shutting down...")
        self._stop.set()

    async def _next_request(self) -> Optional[JobRequest]:
        """One long-poll, abandoned early if stop() is called meanwhile."""
        poll = asyncio.create_task(self.queue.poll(self.poll_model_ids))
        stopped = asyncio.create_task(self._stop.wait())
        try:
            done, _ = await asyncio.wait({poll, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
        if poll not in done:
            poll.cancel()
            await asyncio.gather(poll, return_exceptions=True)
            return None
        return poll.result()

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.settings.poll_backoff_s)
        except asyncio.TimeoutError:
            pass

    async def shutdown(self) -> None:
        """Wait for in-flight jobs, then tell the queue we are gone (best effort)."""
        self._stop.set()
        if self._tasks:
            log.info("Waiting for %d in-flight job(s)", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        try:
            await self.queue.disconnect()
        except TunnelError as e:
            log.warning("Disconnect failed: %s", e.message)
        self.slog.info("runner_stopped", completed=self.completed, failed=self.failed)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def dispatch(self, request: JobRequest) -> asyncio.Task:
        self.active += 1
        task = asyncio.create_task(self.process(request))
        self._tasks.add(task)
        task.add_done_callback(self._job_done)
        return task

    def _job_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self.active -= 1

    async def process(self, request: JobRequest) -> JobResult:
        """Run one job and submit its result exactly once."""
        with self.slog.job_context(request.id, request.request_type, model=request.model_id) as ctx:
            try:
                result = await self.execute(request, ctx)
            except TunnelError as e:
                result = JobResult.failed(e.kind.value, e.message)
            except Exception as e:
                log.exception("Job %s crashed", request.id)
                result = JobResult.failed(ErrorKind.INTERNAL.value, str(e) or type(e).__name__)

            try:
                await self.queue.submit_result(
                    request.id,
                    result.success,
                    result=result.to_wire(request.kind),
                    error=result.error,
                )
            except TunnelError as e:
                ctx.error("result_submit_failed", error=e.message, error_kind=e.kind.value)

            if result.success:
                self.completed += 1
                ctx.milestone("job_completed", mime_type=result.mime_type)
            else:
                self.failed += 1
                ctx.error("job_failed", error=result.error or "", error_kind=result.error_kind)
        return result

    async def execute(self, request: JobRequest, ctx: Any) -> JobResult:
        provider = self.model_map.get(request.model_id)
        if provider is None:
            raise ModelNotFoundError(
                f"Model {request.model_id} not found. Is it registered on your local server?"
            )

        kind = request.kind
        if kind is None:
            raise UnsupportedRequestError(f"Unknown request type: {request.request_type}")
        if not provider.supports(kind, request.model_id):
            raise UnsupportedRequestError(
                f"Provider {provider.display_name} does not support {kind} generation"
            )

        ctx.milestone("job_dispatched", provider=provider.name, kind=kind)
        if kind == "text":
            return await self.run_text(request, provider)
        return await self.run_generation(request, provider)

    async def run_text(self, request: JobRequest, provider: TextProvider) -> JobResult:
        payload = request.payload
        throttle = ProgressThrottle(self.settings.progress_interval_s, self.clock)
        content = ""

        chunks = provider.chat(
            request.model_id,
            payload.messages,
            ChatOptions(temperature=payload.temperature, max_tokens=payload.max_tokens),
        )
        async for chunk in chunks:
            content += chunk.content
            if chunk.content and throttle.ready():
                await self.queue.submit_progress(request.id, content)

        await self.queue.submit_progress(request.id, content)
        return JobResult.text(content)

    async def run_generation(self, request: JobRequest, provider: GenerativeProvider) -> JobResult:
        payload = request.payload
        options = GenerationOptions.model_validate(payload.config or {})
        throttle = ProgressThrottle(self.settings.progress_interval_s, self.clock)

        async def on_progress(event: ProgressEvent) -> None:
            if throttle.accept(event):
                await self.queue.submit_generation_progress(request.id, event)

        result = await provider.generate(request.model_id, payload.prompt or "", options, on_progress)

        if result.success and throttle.seen:
            total = throttle.last_total
            await self.queue.submit_generation_progress(request.id, ProgressEvent(step=total, total_steps=total))
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        return {
            "running": self.started_at is not None and not self.stopping,
            "uptime_s": round(self.clock() - self.started_at, 1) if self.started_at is not None else None,
            "active_jobs": self.active,
            "completed_jobs": self.completed,
            "failed_jobs": self.failed,
            "models": [
                {
                    "name": m.name,
                    "provider": m.provider,
                    "capability": m.capability,
                    "status_hint": m.status_hint,
                }
                for m in self.models
            ],
        }
