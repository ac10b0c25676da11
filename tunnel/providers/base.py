"""
Provider contract shared by every local backend adapter.

A provider owns one local server (Ollama, LM Studio, SD WebUI, ComfyUI):
it answers liveness, lists models, and executes jobs for the
capabilities it declares. Backend failures surface as TunnelError
subclasses; nothing here talks to the remote queue.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple, Union

import httpx

from shared.schemas import (
    Capability,
    ChatChunk,
    ChatMessage,
    ChatOptions,
    GenerationOptions,
    JobResult,
    ModelRecord,
    ParameterSchema,
    ProgressEvent,
)
from tunnel.errors import ModelNotFoundError, ProtocolError, TransportError
from tunnel.http_client import LoggedHTTPClient, backend_client

log = logging.getLogger("tunnel.providers")

CONNECT_FAILED_MESSAGE = (
    "Failed to connect to the API. Please make sure your local model server is running."
)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class Provider(ABC):
    """Base adapter. Subclasses set the class attributes and override the hooks."""

    name: str = ""
    display_name: str = ""
    description: str = ""
    capabilities: Tuple[Capability, ...] = ()
    liveness_path: str = "/"
    liveness_timeout: float = 5.0

    def __init__(
        self,
        base_url: str,
        install_path: Optional[Path] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.install_path = install_path
        self.transport = transport

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.base_url}>"

    def client(self, timeout: Optional[httpx.Timeout] = None) -> LoggedHTTPClient:
        return backend_client(self.name, self.base_url, timeout=timeout, transport=self.transport)

    def supports(self, kind: Optional[str], model: Optional[str] = None) -> bool:
        """Whether ``kind`` jobs can run here; providers with mixed models narrow this per model."""
        return kind in self.capabilities

    async def is_running(self) -> bool:
        """True if the backend answers its liveness endpoint. Never raises."""
        try:
            async with self.client() as http:
                resp = await http.get(self.liveness_path, timeout=self.liveness_timeout)
                return resp.status_code < 400
        except Exception as e:
            log.debug("%s not reachable at %s: %s", self.display_name, self.base_url, e)
            return False

    async def discover_models(self) -> List[ModelRecord]:
        """Models the backend can serve right now. Returns [] when it cannot be asked."""
        return []

    async def get_parameter_schemas(self) -> List[ParameterSchema]:
        return []

    @asynccontextmanager
    async def translate_errors(self, model: str):
        """Turn httpx failures inside the block into TunnelErrors."""
        try:
            yield
        except httpx.ConnectError as e:
            raise TransportError(CONNECT_FAILED_MESSAGE) from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise ModelNotFoundError(
                    f"Model {model} not found. Is it registered on your local server?"
                ) from e
            raise ProtocolError(f"{self.display_name} request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{self.display_name} request failed: {e}") from e

    @staticmethod
    async def raise_for_status(resp: httpx.Response, what: str, model: str) -> None:
        """Raise for a non-2xx response, reading the body first (works for streamed responses)."""
        if resp.status_code < 400:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        if resp.status_code == 404:
            raise ModelNotFoundError(f"Model {model} not found. Is it registered on your local server?")
        raise ProtocolError(f"{what} failed: {resp.status_code} {body}")


class TextProvider(Provider):
    capabilities: Tuple[Capability, ...] = ("text",)

    @abstractmethod
    def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[ChatChunk]:
        """Stream chat output as incremental chunks, in order."""
        raise NotImplementedError


class GenerativeProvider(Provider):
    @abstractmethod
    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobResult:
        """Produce one image or video artifact; progress goes to ``on_progress``."""
        raise NotImplementedError
