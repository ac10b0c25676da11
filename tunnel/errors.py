from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(str, Enum):
    # Generative job protocol
    NO_TEMPLATE = "no_template"
    VALIDATION_FAILED = "validation_failed"
    CONNECT_FAILED = "connect_failed"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    FETCH_FAILED = "fetch_failed"
    NO_OUTPUT = "no_output"
    DOWNLOAD_FAILED = "download_failed"
    # Everything else
    TRANSPORT = "transport"
    NOT_FOUND = "not_found"
    PROTOCOL = "protocol"
    UNSUPPORTED = "unsupported"
    INTERNAL = "internal"


_CATEGORIES: Dict[ErrorKind, str] = {
    ErrorKind.NO_TEMPLATE: "not_found",
    ErrorKind.VALIDATION_FAILED: "validation",
    ErrorKind.CONNECT_FAILED: "transport",
    ErrorKind.EXECUTION_ERROR: "execution",
    ErrorKind.TIMEOUT: "timeout",
    ErrorKind.FETCH_FAILED: "transport",
    ErrorKind.NO_OUTPUT: "protocol",
    ErrorKind.DOWNLOAD_FAILED: "transport",
    ErrorKind.TRANSPORT: "transport",
    ErrorKind.NOT_FOUND: "not_found",
    ErrorKind.PROTOCOL: "protocol",
    ErrorKind.UNSUPPORTED: "not_found",
    ErrorKind.INTERNAL: "protocol",
}


class TunnelError(Exception):
    """Base for every failure the tunnel reports back to the queue."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def category(self) -> str:
        return _CATEGORIES[self.kind]


class TransportError(TunnelError):
    kind = ErrorKind.TRANSPORT


class ProtocolError(TunnelError):
    kind = ErrorKind.PROTOCOL


class ModelNotFoundError(TunnelError):
    kind = ErrorKind.NOT_FOUND


class UnsupportedRequestError(TunnelError):
    kind = ErrorKind.UNSUPPORTED


class NotAuthenticatedError(TunnelError):
    kind = ErrorKind.TRANSPORT


class NoTemplateError(TunnelError):
    kind = ErrorKind.NO_TEMPLATE


class GraphValidationError(TunnelError):
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, node_errors: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.node_errors = node_errors or {}


class ConnectFailedError(TunnelError):
    kind = ErrorKind.CONNECT_FAILED


class ExecutionError(TunnelError):
    kind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, node_type: Optional[str] = None, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_type = node_type
        self.node_id = node_id


class JobTimeoutError(TunnelError):
    kind = ErrorKind.TIMEOUT


class FetchFailedError(TunnelError):
    kind = ErrorKind.FETCH_FAILED


class NoOutputError(TunnelError):
    kind = ErrorKind.NO_OUTPUT


class DownloadFailedError(TunnelError):
    kind = ErrorKind.DOWNLOAD_FAILED


CUDA_UNSUPPORTED_REMEDIATION = [
    "This ComfyUI install is using a PyTorch/CUDA build that doesn’t support this GPU architecture.",
    "Fix: reinstall PyTorch with a CUDA build that supports your GPU (or build from source), then restart ComfyUI.",
]


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def classify_execution_error(msg: str) -> Dict[str, object]:
    """Classify backend execution errors for logging + remediation guidance."""
    message = msg or ""
    if _contains_any(message, ["no kernel image is available for execution on the device"]):
        return {
            "category": "cuda_unsupported_arch",
            "short": "Torch/CUDA build doesn’t support this GPU (kernel image not available).",
            "action": CUDA_UNSUPPORTED_REMEDIATION,
        }
    if _contains_any(message, ["out of memory", "allocation on device"]):
        return {
            "category": "oom",
            "short": "GPU out of memory.",
            "action": [
                "Reduce resolution, frame count, or steps.",
                "Close other GPU workloads and retry.",
            ],
        }
    if _contains_any(message, ["value not in list", "could not find", "not found", "no such file"]):
        return {
            "category": "missing_model_file",
            "short": "A model file referenced by the job graph is missing.",
            "action": [
                "Check that the checkpoint, text encoder and VAE files are in ComfyUI's models folders.",
                "Restart ComfyUI after adding model files.",
            ],
        }
    return {
        "category": "unknown",
        "short": "Backend execution error.",
        "action": ["Check the backend's console output for the full traceback."],
    }
