"""
Client for the remote job queue.

All calls carry the bearer token from config. Progress submissions are
best effort (a non-2xx is logged, never raised); everything else raises
a TunnelError subclass.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from shared.schemas import JobRequest, ModelRecord, ProgressEvent, SyncModelEntry
from tunnel.errors import NotAuthenticatedError, ProtocolError, TransportError, TunnelError
from tunnel.http_client import LoggedHTTPClient, queue_client

log = logging.getLogger("tunnel.queue_api")

API_PREFIX = "/v1/local-models"


class QueueClient:
    """
    Thin async wrapper over the queue's HTTP surface.

    Use as an async context manager; the underlying connection pool lives
    for the duration of the block.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise NotAuthenticatedError("Not authenticated. Set an API key in the tunnel config or TUNNEL_API_KEY.")
        self.base_url = base_url.rstrip("/")
        self._http: LoggedHTTPClient = queue_client(self.base_url, api_key, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "QueueClient":
        await self._http.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._http.__aexit__(exc_type, exc_val, exc_tb)

    async def _call(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, f"{API_PREFIX}{path}", **kwargs)
        except httpx.RequestError as e:
            raise TransportError(f"Queue request {method} {path} failed: {e}") from e

    @staticmethod
    def _check(resp: httpx.Response, what: str) -> None:
        if resp.status_code == 401:
            raise NotAuthenticatedError(f"{what} failed: API key rejected (401)")
        if resp.status_code >= 400:
            raise ProtocolError(f"{what} failed: {resp.status_code} {resp.text}")

    async def poll(self, model_ids: Sequence[str]) -> Optional[JobRequest]:
        """Long-poll for the next job; None when the queue has nothing (204)."""
        resp = await self._call("GET", "/poll", params={"modelIds": ",".join(model_ids)})
        if resp.status_code == 204:
            return None
        self._check(resp, "Poll")

        try:
            body = resp.json()
        except ValueError as e:
            raise ProtocolError(f"Poll returned invalid JSON: {e}") from e
        request = body.get("request") if isinstance(body, dict) else None
        if not request:
            return None
        try:
            return JobRequest.model_validate(request)
        except ValidationError as e:
            request_id = request.get("id") if isinstance(request, dict) else None
            if not isinstance(request_id, str) or not request_id:
                raise ProtocolError(f"Poll returned a malformed request: {e}") from e
            await self._reject(request_id, e)
            return None

    async def _reject(self, request_id: str, error: ValidationError) -> None:
        """The queue has handed this request out already, so it still gets its one result."""
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in error.errors())
        message = f"Malformed request: invalid {fields}"
        log.warning("Rejecting request %s: %s", request_id, error)
        try:
            await self.submit_result(request_id, False, error=message)
        except TunnelError as e:
            log.error("Failed to reject malformed request %s: %s", request_id, e.message)

    async def _post_progress(self, request_id: str, body: Dict[str, Any]) -> None:
        try:
            resp = await self._call("POST", f"/requests/{request_id}/progress", json=body)
        except TransportError as e:
            log.warning("Failed to submit progress for %s: %s", request_id, e.message)
            return
        if resp.status_code >= 400:
            log.warning("Failed to submit progress for %s: %s", request_id, resp.status_code)

    async def submit_progress(self, request_id: str, content: str, type: str = "chunk") -> None:
        """Text progress: the full accumulated content so far (``type`` is chunk or log)."""
        await self._post_progress(request_id, {"type": type, "content": content})

    async def submit_generation_progress(self, request_id: str, event: ProgressEvent) -> None:
        body: Dict[str, Any] = {
            "type": "generation",
            "step": event.step,
            "totalSteps": event.total_steps,
        }
        if event.preview:
            body["preview"] = event.preview
        await self._post_progress(request_id, body)

    async def submit_result(
        self,
        request_id: str,
        success: bool,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {"success": success}
        if result is not None:
            body["result"] = result
        if error is not None:
            body["error"] = error
        resp = await self._call("POST", f"/requests/{request_id}/result", json=body)
        self._check(resp, "Submit result")

    async def sync_models(self, records: List[ModelRecord]) -> None:
        models = [
            SyncModelEntry.from_record(r).model_dump(by_alias=True, exclude_none=True)
            for r in records
        ]
        resp = await self._call("POST", "/models/sync", json={"models": models})
        self._check(resp, "Model sync")

    async def verify_api_key(self) -> bool:
        try:
            resp = await self._call("GET", "/verify-api-key")
        except TransportError as e:
            log.warning("API key check failed: %s", e.message)
            return False
        return resp.status_code < 400

    async def disconnect(self) -> None:
        resp = await self._call("POST", "/disconnect")
        self._check(resp, "Disconnect")
