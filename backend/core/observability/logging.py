"""JSON structured logging with mandatory fields and secret redaction."""
import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from backend.core.config import settings

# Request context; copied into worker threads that serve sync endpoints
_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_tenant_id: ContextVar[str] = ContextVar("tenant_id", default="unknown")
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_RESERVED = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    )
)

# Extra keys whose values are never emitted
SECRET_KEYS = frozenset(("token", "sign", "certificate", "private_key", "envelope", "cms"))

_PEM_RE = re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL)
# Tokens, signatures and CMS blobs are long base64 runs
_BLOB_RE = re.compile(r"[A-Za-z0-9+/]{64,}={0,2}")


def redact(text: Any) -> Any:
    """Mask PEM blocks and long base64 blobs in a string."""
    if not isinstance(text, str):
        return text
    text = _PEM_RE.sub("[pem-redacted]", text)
    return _BLOB_RE.sub(lambda m: m.group(0)[:6] + "…[redacted]", text)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and secret redaction."""

    def format(self, record):
        trace_id = _trace_id.get() or "unknown"
        tenant_id = _tenant_id.get()
        request_id = _request_id.get()

        log_entry = {
            "trace_id": trace_id,
            "tenant_id": tenant_id,
            "level": record.levelname.lower(),
            "msg": redact(record.getMessage()),
            "ts_utc": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

        if request_id:
            log_entry["request_id"] = request_id

        if record.exc_info:
            log_entry["exc_info"] = redact(self.formatException(record.exc_info))

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            if key in SECRET_KEYS:
                log_entry[key] = "[redacted]"
                continue
            log_entry[key] = redact(value)

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: str) -> None:
    """Set trace ID for the current context."""
    _trace_id.set(trace_id)


def set_tenant_id(tenant_id: str) -> None:
    """Set tenant ID for the current context."""
    _tenant_id.set(tenant_id)


def set_request_id(request_id: Optional[str]) -> None:
    """Set request ID for the current context."""
    _request_id.set(request_id)


def init_logging() -> None:
    """Initialize JSON logging with mandatory fields."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger(__name__)
