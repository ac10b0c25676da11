"""
Shared test doubles.

- FakeChannel: scripted progress channel for GenerativeJob's ``connect`` hook
- FakeComfy: in-memory ComfyUI HTTP API served through httpx.MockTransport
- FakeQueueServer: in-memory remote queue served through httpx.MockTransport
"""
import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import httpx
import pytest
from websockets.exceptions import ConnectionClosedOK

COMFY_URL = "http://127.0.0.1:8188"
QUEUE_URL = "http://queue.test"


class FakeChannel:
    """
    Replays ``messages`` (dicts are JSON-encoded, exceptions are raised).
    When exhausted it either hangs forever or reports a closed socket.
    """

    def __init__(self, messages: Optional[List[Any]] = None, hang: bool = True):
        self.messages = list(messages or [])
        self.hang = hang
        self.closed = False
        self.url: Optional[str] = None

    async def recv(self):
        if self.messages:
            msg = self.messages.pop(0)
            if isinstance(msg, BaseException):
                raise msg
            if isinstance(msg, (str, bytes)):
                return msg
            return json.dumps(msg)
        if self.hang:
            await asyncio.Event().wait()
        raise ConnectionClosedOK(None, None)

    async def close(self):
        self.closed = True


def channel_factory(channel: FakeChannel):
    async def connect(url: str) -> FakeChannel:
        channel.url = url
        return channel

    return connect


def _json(status: int, body: Any) -> httpx.Response:
    return httpx.Response(status, json=body)


class FakeComfy:
    def __init__(self, prompt_id: str = "prompt-1"):
        self.prompt_id = prompt_id
        self.requests: List[httpx.Request] = []
        self.submitted: List[Dict[str, Any]] = []
        self.node_errors: Dict[str, Any] = {}
        self.outputs: Dict[str, Any] = {}
        self.history_status: Dict[str, Any] = {"status_str": "success", "completed": True, "messages": []}
        self.files: Dict[str, bytes] = {}
        self.object_info: Dict[str, List[str]] = {}
        self.userdata: Optional[List[Any]] = None
        self.workflow_files: Dict[str, Any] = {}
        self.converter = False
        self.running = True

    @property
    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if not self.running:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/system_stats":
            return _json(200, {"system": {"os": "posix"}})
        if path == "/prompt" and request.method == "POST":
            body = json.loads(request.content)
            self.submitted.append(body)
            if self.node_errors:
                return _json(400, {
                    "error": {"type": "prompt_outputs_failed_validation", "message": "Prompt outputs failed validation"},
                    "node_errors": self.node_errors,
                })
            return _json(200, {"prompt_id": self.prompt_id, "number": 1, "node_errors": {}})
        if path.startswith("/history/"):
            if path.rsplit("/", 1)[1] != self.prompt_id:
                return _json(200, {})
            return _json(200, {self.prompt_id: {"outputs": self.outputs, "status": self.history_status}})
        if path == "/view":
            data = self.files.get(request.url.params.get("filename"))
            if data is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, content=data)
        if path == "/queue":
            return _json(200, {"queue_running": [], "queue_pending": []})
        if path.startswith("/object_info/"):
            node_class = path.rsplit("/", 1)[1]
            if node_class not in self.object_info:
                return _json(404, {})
            field = "ckpt_name" if node_class == "CheckpointLoaderSimple" else "unet_name"
            return _json(200, {node_class: {"input": {"required": {field: [self.object_info[node_class]]}}}})
        if path == "/userdata":
            if self.userdata is None:
                return _json(404, {})
            return _json(200, self.userdata)
        if path.startswith("/userdata/"):
            key = unquote(path[len("/userdata/"):])
            if key not in self.workflow_files:
                return _json(404, {})
            return _json(200, self.workflow_files[key])
        if path == "/workflow/convert":
            if not self.converter:
                return httpx.Response(405)
            ui = json.loads(request.content)
            return _json(200, {
                str(node["id"]): {"class_type": node["type"], "inputs": {}}
                for node in ui.get("nodes", [])
            })
        return _json(404, {})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeQueueServer:
    """Hands out ``jobs`` one per poll, then answers 204; records everything posted back."""

    def __init__(self, jobs: Optional[List[Dict[str, Any]]] = None):
        self.jobs = list(jobs or [])
        self.polls = 0
        self.poll_failures = 0
        self.progress: Dict[str, List[Dict[str, Any]]] = {}
        self.results: Dict[str, List[Dict[str, Any]]] = {}
        self.synced: List[Dict[str, Any]] = []
        self.disconnected = False
        self.auth_headers: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.auth_headers.append(request.headers.get("authorization", ""))
        path = request.url.path.replace("/v1/local-models", "", 1)

        if path == "/poll":
            self.polls += 1
            if self.poll_failures:
                self.poll_failures -= 1
                return httpx.Response(502, text="bad gateway")
            if self.jobs:
                return _json(200, {"request": self.jobs.pop(0)})
            return httpx.Response(204)
        if path.endswith("/progress"):
            request_id = path.split("/")[2]
            self.progress.setdefault(request_id, []).append(json.loads(request.content))
            return _json(200, {})
        if path.endswith("/result"):
            request_id = path.split("/")[2]
            self.results.setdefault(request_id, []).append(json.loads(request.content))
            return _json(200, {})
        if path == "/models/sync":
            self.synced = json.loads(request.content)["models"]
            return _json(200, {})
        if path == "/verify-api-key":
            return _json(200, {}) if request.headers.get("authorization") == "Bearer good-key" else _json(401, {})
        if path == "/disconnect":
            self.disconnected = True
            return _json(200, {})
        return _json(404, {})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_comfy() -> FakeComfy:
    return FakeComfy()


@pytest.fixture
def fake_queue() -> FakeQueueServer:
    return FakeQueueServer()
