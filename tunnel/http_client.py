"""
Instrumented HTTP client wrapper for the local model tunnel.

Wraps httpx with structured logging for all outbound HTTP requests
to the remote queue service and to local backends (Ollama, LM Studio,
Stable Diffusion WebUI, ComfyUI).
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx

from tunnel.logging_utils import get_logger, timer


class LoggedHTTPClient:
    """
    HTTP client that logs all requests and responses.

    Wraps httpx.AsyncClient with automatic logging of method, URL,
    status, duration and errors. Request headers are never logged.
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        **client_kwargs
    ):
        """
        Args:
            service: Service name for logging (e.g., "queue", "comfyui", "ollama")
            base_url: Base URL for the service
            timeout: Request timeout configuration
            **client_kwargs: Additional arguments for httpx.AsyncClient
                (headers, transport, ...)
        """
        self.service = service
        self.base_url = base_url or ""
        self.timeout = timeout
        self.logger = get_logger()

        kwargs = client_kwargs.copy()
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout

        self._client_kwargs = kwargs
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(**self._client_kwargs)
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.__aexit__(exc_type, exc_val, exc_tb)
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    @staticmethod
    def _describe(kwargs: Dict[str, Any]):
        timeout = kwargs.get("timeout")
        if isinstance(timeout, httpx.Timeout):
            timeout_value = timeout.read or timeout.connect
        else:
            timeout_value = timeout
        request_body = kwargs.get("json") or kwargs.get("data") or kwargs.get("content")
        return timeout_value, request_body

    def _log_failure(self, method: str, url: str, request_id: str, kwargs: Dict[str, Any], elapsed_ms: float, exc: Exception):
        timeout_value, request_body = self._describe(kwargs)
        if isinstance(exc, httpx.TimeoutException):
            error = f"Timeout: {exc}"
        elif isinstance(exc, httpx.ConnectError):
            error = f"Connection error: {exc}"
        else:
            error = str(exc) or type(exc).__name__
        self.logger.http_out(
            service=self.service,
            method=method,
            url=str(url),
            request_id=request_id,
            timeout=timeout_value,
            request_body=request_body,
            duration_ms=elapsed_ms,
            error=error,
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Make an HTTP request with logging."""
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        with timer() as t:
            try:
                response = await client.request(method, url, **kwargs)
            except Exception as e:
                self._log_failure(method, url, request_id, kwargs, t.elapsed_ms, e)
                raise

            timeout_value, request_body = self._describe(kwargs)
            self.logger.http_out(
                service=self.service,
                method=method,
                url=str(url),
                request_id=request_id,
                timeout=timeout_value,
                request_body=request_body,
                status_code=response.status_code,
                response_body=response.text if response.status_code >= 400 else None,
                duration_ms=t.elapsed_ms,
            )
            return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    @asynccontextmanager
    async def stream(self, method: str, url: str, **kwargs):
        """
        Stream an HTTP request with logging.

        Yields the httpx.Response in streaming mode; the status line is
        logged as soon as headers arrive.
        """
        client = self._get_client()
        request_id = str(uuid.uuid4())[:8]

        with timer() as t:
            try:
                async with client.stream(method, url, **kwargs) as response:
                    timeout_value, request_body = self._describe(kwargs)
                    self.logger.http_out(
                        service=self.service,
                        method=method,
                        url=str(url),
                        request_id=request_id,
                        timeout=timeout_value,
                        request_body=request_body,
                        status_code=response.status_code,
                        duration_ms=t.elapsed_ms,
                    )
                    yield response
            except httpx.HTTPError as e:
                self._log_failure(method, url, request_id, kwargs, t.elapsed_ms, e)
                raise


# Service-specific constructors

def queue_client(
    base_url: str,
    api_key: str,
    timeout: Optional[httpx.Timeout] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LoggedHTTPClient:
    """Create a logged client for the remote queue service."""
    kwargs: Dict[str, Any] = {
        "headers": {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
    }
    if transport is not None:
        kwargs["transport"] = transport
    return LoggedHTTPClient(
        service="queue",
        base_url=base_url,
        timeout=timeout or httpx.Timeout(connect=5.0, read=65.0, write=30.0, pool=10.0),
        **kwargs,
    )


def backend_client(
    service: str,
    base_url: str,
    timeout: Optional[httpx.Timeout] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LoggedHTTPClient:
    """Create a logged client for a local inference backend."""
    kwargs: Dict[str, Any] = {}
    if transport is not None:
        kwargs["transport"] = transport
    return LoggedHTTPClient(
        service=service,
        base_url=base_url,
        timeout=timeout or httpx.Timeout(connect=5.0, read=300.0, write=60.0, pool=10.0),
        **kwargs,
    )
