"""
ComfyUI generative job protocol.

Drives one asynchronously executed graph end to end:

1. BUILD      resolve the model's template and build the graph (seed resolved once)
2. CORRELATE  pick a client id that scopes the progress channel to this job
3. CONNECT    open the websocket before submitting, so no early event is missed
4. SUBMIT     POST /prompt; node_errors fail the job immediately
5. TRACK      read events filtered by prompt_id under one wall-clock timeout,
              falling back to /history polling if the socket drops
6. FETCH      GET /history/{prompt_id} and locate the output file
7. DOWNLOAD   GET /view, base64 the bytes and classify the MIME type

Every failure is a TunnelError subclass; nothing is retried here.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import posixpath
import random
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from shared.schemas import GenerationOptions, JobResult, ProgressEvent
from tunnel.errors import (
    ConnectFailedError,
    DownloadFailedError,
    ExecutionError,
    FetchFailedError,
    GraphValidationError,
    JobTimeoutError,
    NoOutputError,
    NoTemplateError,
    ProtocolError,
    TransportError,
    TunnelError,
    classify_execution_error,
)
from tunnel.http_client import LoggedHTTPClient
from tunnel.logging_utils import get_logger
from tunnel.workflows.registry import find_template, resolve_params, supported_families

log = logging.getLogger("tunnel.comfy_ws")

# Output slot names by output node type, checked in this order
OUTPUT_SLOTS = ("gifs", "images")

MIME_TYPES: Dict[str, str] = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}
DEFAULT_MIME_TYPE = "video/mp4"

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class ProtocolState(str, Enum):
    BUILD = "build"
    CORRELATE = "correlate"
    CONNECT = "connect"
    SUBMIT = "submit"
    TRACK = "track"
    FETCH = "fetch"
    DOWNLOAD = "download"
    DONE = "done"
    FAILED = "failed"


class ProgressChannel(Protocol):
    async def recv(self) -> Union[str, bytes]: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[str], Awaitable[ProgressChannel]]


async def open_websocket(url: str) -> ProgressChannel:
    return await websockets.connect(url, ping_interval=20, ping_timeout=30, max_size=None)


def websocket_url(base_url: str, client_id: str) -> str:
    ws_url = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_url.rstrip('/')}/ws?clientId={client_id}"


def mime_type_for(filename: str) -> str:
    ext = posixpath.splitext(filename)[1].lower()
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def format_node_errors(node_errors: Dict[str, Any]) -> str:
    """Render ComfyUI node_errors as 'node 6 (KSampler): msg; ...'."""
    parts: List[str] = []
    for node_id, info in node_errors.items():
        if not isinstance(info, dict):
            parts.append(f"node {node_id}: {info}")
            continue
        class_type = info.get("class_type")
        messages = []
        for err in info.get("errors") or []:
            if isinstance(err, dict):
                msg = err.get("message", "")
                details = err.get("details")
                messages.append(f"{msg}: {details}" if details else msg)
            else:
                messages.append(str(err))
        label = f"node {node_id} ({class_type})" if class_type else f"node {node_id}"
        parts.append(f"{label}: {', '.join(messages) or 'invalid'}")
    return "; ".join(parts)


def extract_output_file(
    history: Dict[str, Any],
    prompt_id: str,
    output_node_id: Optional[str] = None,
) -> Optional[Dict[str, str]]:
    """
    Locate the artifact in a /history response.

    With ``output_node_id`` only that node is read; otherwise every output
    node is scanned. Within a node the slots in OUTPUT_SLOTS are tried in
    order, and across nodes a ``gifs`` entry wins over an ``images`` one.

    Returns a dict with filename, subfolder, type, or None.
    """
    prompt_history = history.get(prompt_id)
    if not prompt_history:
        return None
    outputs = prompt_history.get("outputs") or {}

    if output_node_id is not None:
        candidates = [outputs.get(output_node_id) or {}]
    else:
        candidates = list(outputs.values())

    for slot in OUTPUT_SLOTS:
        for node_outputs in candidates:
            for info in node_outputs.get(slot) or []:
                filename = info.get("filename")
                if not filename:
                    continue
                return {
                    "filename": filename,
                    "subfolder": info.get("subfolder", ""),
                    "type": info.get("type", "output"),
                }
    return None


def _execution_error_from(msg_data: Dict[str, Any]) -> ExecutionError:
    node_type = msg_data.get("node_type")
    message = msg_data.get("exception_message") or "Unknown error"
    where = f" in {node_type}" if node_type else ""
    return ExecutionError(
        f"ComfyUI execution error{where}: {message}".strip(),
        node_type=node_type,
        node_id=msg_data.get("node_id"),
    )


async def check_queue_status(
    prompt_id: str,
    http: LoggedHTTPClient,
) -> Dict[str, Any]:
    """
    Where ``prompt_id`` sits in the ComfyUI queue. Never raises.

    Returns in_queue, is_running, queue_position, queue_remaining.
    """
    try:
        resp = await http.get("/queue", timeout=5.0)
        resp.raise_for_status()
        queue = resp.json()

        running = queue.get("queue_running", [])
        pending = queue.get("queue_pending", [])

        is_running = any(item[1] == prompt_id for item in running)
        queue_position = None
        for i, item in enumerate(pending):
            if item[1] == prompt_id:
                queue_position = i
                break

        return {
            "in_queue": queue_position is not None,
            "is_running": is_running,
            "queue_position": queue_position,
            "queue_remaining": len(running) + len(pending),
        }
    except Exception as e:
        log.debug("Failed to check queue status: %s", e)
        return {
            "in_queue": False,
            "is_running": False,
            "queue_position": None,
            "queue_remaining": 0,
            "error": str(e),
        }


class GenerativeJob:
    """
    One submit/track/fetch run against ComfyUI.

    ``http`` must be an entered LoggedHTTPClient whose base_url is the
    ComfyUI server. ``connect`` opens the progress channel; tests inject
    an in-memory channel here.
    """

    def __init__(
        self,
        base_url: str,
        http: LoggedHTTPClient,
        *,
        connect: ChannelFactory = open_websocket,
        timeout_seconds: float = 30 * 60,
        history_timeout: float = 30.0,
        download_timeout: float = 60.0,
        poll_interval: float = 1.0,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.connect = connect
        self.timeout_seconds = timeout_seconds
        self.history_timeout = history_timeout
        self.download_timeout = download_timeout
        self.poll_interval = poll_interval
        self.on_progress = on_progress

        self.state: Optional[ProtocolState] = None
        self.transitions: List[ProtocolState] = []
        self.client_id: Optional[str] = None
        self.prompt_id: Optional[str] = None
        self.events_seen = 0
        self.max_step = 0
        self._execution_started = False
        self._channel: Optional[ProgressChannel] = None
        self.slog = get_logger()

    def _enter(self, state: ProtocolState) -> None:
        self.state = state
        self.transitions.append(state)
        log.debug("Job %s -> %s", self.prompt_id or self.client_id or "-", state.value)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def run_template(
        self,
        model: str,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        rng: Optional[random.Random] = None,
    ) -> JobResult:
        """Build the model's graph from its template and run it."""
        self._enter(ProtocolState.BUILD)
        template = find_template(model)
        if template is None:
            self._enter(ProtocolState.FAILED)
            families = ", ".join(t.display_name for t in supported_families())
            raise NoTemplateError(
                f"No workflow template found for model: {model}. Supported families: {families}"
            )

        params = resolve_params(template, model, prompt, options, rng)
        graph, output_node_id = template.build(params)
        log.info(
            "Built %s graph for %s (seed=%d, %dx%d, %d frames @ %d fps, %d steps)",
            template.family, model, params.seed, params.width, params.height,
            params.num_frames, params.fps, params.steps,
        )
        return await self.run_graph(
            graph,
            output_node_id=output_node_id,
            seed=params.seed,
            duration_seconds=params.num_frames / params.fps if params.fps else None,
            fps=params.fps,
        )

    async def run_graph(
        self,
        graph: Dict[str, Any],
        output_node_id: Optional[str] = None,
        seed: Optional[int] = None,
        duration_seconds: Optional[float] = None,
        fps: Optional[int] = None,
    ) -> JobResult:
        """Run an already-built graph. ``seed`` etc. are echoed into the result."""
        try:
            self._enter(ProtocolState.CORRELATE)
            self.client_id = f"tunnel_{uuid.uuid4().hex}"

            self._enter(ProtocolState.CONNECT)
            channel = await self._connect()
            try:
                self._enter(ProtocolState.SUBMIT)
                self.prompt_id = await self._submit(graph)

                self._enter(ProtocolState.TRACK)
                await self._track(channel)
            finally:
                await self._close(channel)

            self._enter(ProtocolState.FETCH)
            output_file = await self._fetch(output_node_id)

            self._enter(ProtocolState.DOWNLOAD)
            data = await self._download(output_file)
        except TunnelError as e:
            self._enter(ProtocolState.FAILED)
            self.slog.warning(
                "comfy_job_failed",
                request_id=self.prompt_id,
                error=e.message,
                error_kind=e.kind.value,
                client_id=self.client_id,
                events_seen=self.events_seen,
            )
            raise

        self._enter(ProtocolState.DONE)
        return JobResult.artifact(
            data,
            mime_type_for(output_file["filename"]),
            seed=seed,
            duration_seconds=duration_seconds,
            fps=fps,
        )

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    async def _connect(self) -> ProgressChannel:
        url = websocket_url(self.base_url, self.client_id or "")
        try:
            channel = await self.connect(url)
        except Exception as e:
            raise ConnectFailedError(f"Failed to connect to ComfyUI WebSocket: {e}") from e
        self._channel = channel
        log.info("Connected to ComfyUI websocket as %s", self.client_id)
        return channel

    async def _close(self, channel: ProgressChannel) -> None:
        try:
            await channel.close()
        except Exception as e:
            log.debug("Error closing progress channel: %s", e)
        self._channel = None

    async def _submit(self, graph: Dict[str, Any]) -> str:
        try:
            resp = await self.http.post(
                "/prompt",
                json={"prompt": graph, "client_id": self.client_id},
                timeout=30.0,
            )
        except httpx.RequestError as e:
            raise TransportError(f"ComfyUI prompt submission failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        node_errors = body.get("node_errors") or {}
        if node_errors:
            raise GraphValidationError(
                f"ComfyUI workflow validation failed: {format_node_errors(node_errors)}",
                node_errors=node_errors,
            )
        if resp.status_code == 400:
            error = body.get("error") or {}
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise GraphValidationError(f"ComfyUI workflow validation failed: {detail or resp.text}")
        if resp.status_code >= 400:
            raise ProtocolError(f"ComfyUI prompt submission failed: {resp.status_code} {resp.text}")

        prompt_id = body.get("prompt_id")
        if not prompt_id:
            raise ProtocolError("ComfyUI accepted the prompt but returned no prompt_id")
        log.info("Submitted prompt %s (queue number %s)", prompt_id, body.get("number"))
        return prompt_id

    async def _track(self, channel: ProgressChannel) -> None:
        try:
            await asyncio.wait_for(self._listen(channel), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._close(channel)
            queue = await check_queue_status(self.prompt_id or "", self.http)
            minutes = self.timeout_seconds / 60
            self.slog.error(
                "comfy_job_timeout",
                request_id=self.prompt_id,
                error="timeout",
                timeout_s=self.timeout_seconds,
                max_step=self.max_step,
                **{k: v for k, v in queue.items() if k != "error"},
            )
            raise JobTimeoutError(f"Video generation timed out after {minutes:g} minutes") from None

    async def _listen(self, channel: ProgressChannel) -> None:
        while True:
            try:
                msg = await channel.recv()
            except ConnectionClosed as e:
                log.warning("ComfyUI websocket closed during tracking (%s); polling /history", e)
                await self._poll_history()
                return

            if isinstance(msg, bytes):
                # Binary frames are latent previews
                continue
            try:
                data = json.loads(msg)
            except (json.JSONDecodeError, TypeError):
                log.debug("Non-JSON websocket message: %s", str(msg)[:100])
                continue
            if not isinstance(data, dict):
                continue

            if await self._handle_message(data):
                return

    async def _handle_message(self, data: Dict[str, Any]) -> bool:
        """
        Apply one websocket event. Returns True once our prompt succeeded;
        raises ExecutionError if it failed.
        """
        msg_type = data.get("type", "")
        msg_data = data.get("data") or {}
        msg_prompt_id = msg_data.get("prompt_id")
        self.events_seen += 1

        if msg_type == "progress":
            # Older servers omit prompt_id on progress; the channel is ours alone
            if msg_prompt_id is None or msg_prompt_id == self.prompt_id:
                value = int(msg_data.get("value", 0))
                self.max_step = max(self.max_step, value)
                await self._emit_progress(ProgressEvent(
                    step=value,
                    total_steps=int(msg_data.get("max", 0)),
                    stage=msg_data.get("node"),
                ))
            return False

        if msg_prompt_id != self.prompt_id:
            return False

        if msg_type == "execution_start":
            self._execution_started = True
            log.info("Execution started for prompt %s", self.prompt_id)
            return False

        if msg_type == "execution_success":
            log.info("Execution succeeded for prompt %s", self.prompt_id)
            return True

        if msg_type == "executing" and msg_data.get("node") is None:
            # node=None marks the end of this prompt's execution
            log.info("Execution finished for prompt %s (node=None signal)", self.prompt_id)
            return True

        if msg_type == "execution_error":
            error = _execution_error_from(msg_data)
            self._log_execution_error(error)
            raise error

        if msg_type == "execution_interrupted":
            raise ExecutionError("ComfyUI execution was interrupted")

        return False

    async def _emit_progress(self, event: ProgressEvent) -> None:
        if not self.on_progress:
            return
        try:
            result = self.on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning("Progress callback error: %s", e)

    def _log_execution_error(self, error: ExecutionError) -> None:
        classified = classify_execution_error(error.message)
        self.slog.error(
            "comfy_execution_error",
            request_id=self.prompt_id,
            error=error.message,
            node_type=error.node_type,
            node_id=error.node_id,
            category=classified["category"],
            remediation=classified["action"],
        )

    async def _poll_history(self) -> None:
        """Socket fallback: poll /history until our prompt finishes (outer timeout applies)."""
        poll_count = 0
        while True:
            poll_count += 1
            try:
                resp = await self.http.get(f"/history/{self.prompt_id}", timeout=self.history_timeout)
                resp.raise_for_status()
                history = resp.json() or {}
            except (httpx.HTTPError, ValueError) as e:
                log.warning("History poll #%d failed: %s", poll_count, e)
                history = {}

            entry = history.get(self.prompt_id) if isinstance(history, dict) else None
            if entry:
                status = entry.get("status") or {}
                if status.get("status_str") == "error":
                    error = ExecutionError("ComfyUI execution error: Unknown error")
                    for message in status.get("messages") or []:
                        if isinstance(message, list) and len(message) == 2 and message[0] == "execution_error":
                            error = _execution_error_from(message[1] or {})
                    self._log_execution_error(error)
                    raise error
                if status.get("completed") or entry.get("outputs"):
                    log.info("Prompt %s completed via polling (poll #%d)", self.prompt_id, poll_count)
                    return

            await asyncio.sleep(self.poll_interval)

    async def _fetch(self, output_node_id: Optional[str]) -> Dict[str, str]:
        try:
            resp = await self.http.get(f"/history/{self.prompt_id}", timeout=self.history_timeout)
        except httpx.RequestError as e:
            raise FetchFailedError(f"Failed to fetch result history: {e}") from e
        if resp.status_code >= 400:
            raise FetchFailedError(f"Failed to fetch result history: {resp.status_code}")
        try:
            history = resp.json() or {}
        except ValueError as e:
            raise FetchFailedError(f"Failed to parse result history: {e}") from e

        if self.prompt_id not in history:
            raise NoOutputError("No result found in ComfyUI history")

        output_file = extract_output_file(history, self.prompt_id or "", output_node_id)
        if output_file is None:
            outputs = list((history[self.prompt_id].get("outputs") or {}).keys())
            log.error(
                "Prompt %s has no output file (wanted node %s, output nodes %s)",
                self.prompt_id, output_node_id, outputs,
            )
            raise NoOutputError("No output files found in ComfyUI result")
        return output_file

    async def _download(self, output_file: Dict[str, str]) -> bytes:
        params = {
            "filename": output_file["filename"],
            "subfolder": output_file.get("subfolder") or "",
            "type": output_file.get("type") or "output",
        }
        try:
            resp = await self.http.get("/view", params=params, timeout=self.download_timeout)
        except httpx.RequestError as e:
            raise DownloadFailedError(f"Failed to download output file: {e}") from e
        if resp.status_code >= 400:
            raise DownloadFailedError(f"Failed to download output file: {resp.status_code}")
        log.info("Downloaded %s (%d bytes)", output_file["filename"], len(resp.content))
        return resp.content
