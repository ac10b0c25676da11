"""
Structured logging for the local model tunnel.

Emits one JSON object per line for:
- Outbound HTTP calls (queue service and local backends)
- Job lifecycle events (received, dispatched, completed, failed)
- Runner health (discovery, model sync, poll failures, shutdown)

Environment variables:
- LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR) [default: INFO]
- LOG_JSON: Enable JSON output (1) or pretty text (0) [default: 1]
- LOG_HTTP_BODY: Include request/response bodies in logs [default: 0]
- LOG_HTTP_MAXLEN: Max length for HTTP body logging [default: 2000]
"""

import json
import logging
import os
import socket
import sys
import time
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
LOG_HTTP_BODY = os.getenv("LOG_HTTP_BODY", "0") == "1"
LOG_HTTP_MAXLEN = int(os.getenv("LOG_HTTP_MAXLEN", "2000"))

HOSTNAME = socket.gethostname()

# Tunnel instance label (environment name, set from config)
TUNNEL_ID: Optional[str] = None

# Query parameters whose values never reach the log
SECRET_PARAMS = {"api_key", "apikey", "key", "token", "access_token"}

# High-volume calls logged at DEBUG: (service, method, path suffix)
QUIET_CALLS = (
    ("queue", "GET", "/poll"),
    ("stable-diffusion", "GET", "/sdapi/v1/progress"),
)


def set_tunnel_id(tunnel_id: str):
    global TUNNEL_ID
    TUNNEL_ID = tunnel_id


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (k, "***" if k.lower() in SECRET_PARAMS else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*,")))


def _truncate(body: Any, max_len: int = LOG_HTTP_MAXLEN) -> Optional[str]:
    if body is None:
        return None
    text = body if isinstance(body, str) else str(body)
    if len(text) > max_len:
        return f"{text[:max_len]}... (truncated, {len(text)} total chars)"
    return text


class JobContext:
    """Lifecycle events for one queue request, all stamped with job id, type and model."""

    def __init__(self, logger: "StructuredLogger", job_id: str, job_type: str, model: Optional[str] = None):
        self.logger = logger
        self.job_id = job_id
        self.job_type = job_type
        self.model = model
        self.start_time = time.monotonic()

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000

    def _fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"job_id": self.job_id, "duration_ms": self.elapsed_ms(), "job_type": self.job_type}
        if self.model:
            fields["model"] = self.model
        return fields

    def milestone(self, event: str, **details):
        self.logger.info(event, **self._fields(), **details)

    def error(self, event: str, error: str, with_trace: bool = False, **details):
        self.logger.error(
            event,
            error=error,
            stack_trace=traceback.format_exc() if with_trace else None,
            **self._fields(),
            **details,
        )


class StructuredLogger:
    """
    Structured logger writing JSON lines to stdout.

    Each line carries ts, level, event, tunnel_id and hostname, plus
    job_id / request_id / duration_ms / error when known and any extra
    fields under "details".
    """

    def __init__(self, name: str = "local-model-tunnel"):
        level = getattr(logging, LOG_LEVEL, logging.INFO)
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if LOG_JSON else PrettyFormatter())
        self.logger.addHandler(handler)
        self.logger.propagate = False

    def log(
        self,
        level: str,
        event: str,
        job_id: Optional[str] = None,
        request_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        stack_trace: Optional[str] = None,
        **details
    ):
        record: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "tunnel_id": TUNNEL_ID,
            "hostname": HOSTNAME,
        }
        if job_id:
            record["job_id"] = job_id
        if request_id:
            record["request_id"] = request_id
        if duration_ms is not None:
            record["duration_ms"] = round(duration_ms, 2)
        if error:
            record["error"] = error
        if stack_trace:
            record["stack_trace"] = stack_trace
        if details:
            record["details"] = details

        self.logger.log(getattr(logging, level, logging.INFO), "", extra={"structured": record})

    def debug(self, event: str, **kwargs):
        self.log("DEBUG", event, **kwargs)

    def info(self, event: str, **kwargs):
        self.log("INFO", event, **kwargs)

    def warning(self, event: str, **kwargs):
        self.log("WARNING", event, **kwargs)

    def error(self, event: str, **kwargs):
        self.log("ERROR", event, **kwargs)

    def http_out(
        self,
        service: str,
        method: str,
        url: str,
        request_id: str,
        timeout: Optional[float] = None,
        request_body: Any = None,
        status_code: Optional[int] = None,
        response_body: Any = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log one outbound call. Headers are never passed in; bodies only with LOG_HTTP_BODY=1."""
        path = urlsplit(url).path
        details: Dict[str, Any] = {"service": service, "method": method, "url": redact_url(url)}
        if timeout is not None:
            details["timeout"] = timeout
        if status_code is not None:
            details["status_code"] = status_code
        if LOG_HTTP_BODY:
            if request_body is not None:
                details["request_body"] = _truncate(request_body)
            if response_body is not None:
                details["response_body"] = _truncate(response_body)

        if error:
            self.error("http_out_error", request_id=request_id, duration_ms=duration_ms, error=error, **details)
            return
        quiet = any(
            service == s and method == m and path.endswith(suffix) for s, m, suffix in QUIET_CALLS
        )
        level = "DEBUG" if quiet and (status_code or 0) < 400 else "INFO"
        self.log(level, "http_out", request_id=request_id, duration_ms=duration_ms, **details)

    @contextmanager
    def job_context(self, job_id: str, job_type: str, model: Optional[str] = None, **initial_details):
        """
        Track one job's lifecycle.

        Usage:
            with logger.job_context("req-1", "video_generation", model="ltx...") as ctx:
                ctx.milestone("job_dispatched", provider="comfyui")
        """
        ctx = JobContext(self, job_id, job_type, model)
        self.info("job_received", job_id=job_id, job_type=job_type, model=model, **initial_details)
        try:
            yield ctx
        except Exception as e:
            ctx.error("job_crashed", error=str(e) or type(e).__name__, with_trace=True)
            raise


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        structured = getattr(record, "structured", None)
        if structured is not None:
            return json.dumps(structured, default=str)

        data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = getattr(record, "structured", None)
        if data is None:
            return super().format(record)

        parts = [f"[{data.get('ts', '')[:19]}]", f"[{data.get('level', 'INFO')}]", data.get("event", "")]
        if data.get("job_id"):
            parts.append(f"job={data['job_id'][:12]}")
        details = dict(data.get("details") or {})
        model = details.pop("model", None)
        if model:
            parts.append(f"model={model}")
        if data.get("duration_ms") is not None:
            parts.append(f"{data['duration_ms']:.0f}ms")
        parts.extend(f"{k}={v}" for k, v in details.items())
        if data.get("error"):
            parts.append(f"error={data['error']!r}")
        return " ".join(parts)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get the process-wide structured logger."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logging(tunnel_id: Optional[str] = None) -> StructuredLogger:
    """Configure stdlib logging for module loggers and announce the structured log settings."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    if tunnel_id:
        set_tunnel_id(tunnel_id)

    logger = get_logger()
    logger.info(
        "logger_config",
        log_level=LOG_LEVEL,
        log_json=LOG_JSON,
        log_http_body=LOG_HTTP_BODY,
        log_http_maxlen=LOG_HTTP_MAXLEN,
    )
    return logger


@contextmanager
def timer():
    """``t.elapsed_ms`` is live inside the block and frozen after it."""
    start = time.perf_counter()
    state: Dict[str, Optional[float]] = {"end": None}

    class Timer:
        @property
        def elapsed_ms(self) -> float:
            end = state["end"] if state["end"] is not None else time.perf_counter()
            return (end - start) * 1000

    try:
        yield Timer()
    finally:
        state["end"] = time.perf_counter()
