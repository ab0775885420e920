"""
Structured JSON logging with correlation IDs.

One JSON object per line: timestamp, level, correlation_id, module, message,
plus the engagement fields below when a call passes them via `extra=`.
The correlation ID is set per request by CorrelationIdMiddleware, so a pixel
hit, its state transition and any store error share one ID.

Tracking tokens are bearer credentials. They are masked wherever they would
otherwise reach a log line, including the server access log.
"""
import json
import logging
import re
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

ENGAGEMENT_FIELDS = ("message_id", "event_type", "client_ip", "policy", "error_code")

# Path segment after a token-bearing route
_TOKEN_IN_PATH = re.compile(r"(/(?:pixel|redirect|webhook/reply)/)([A-Za-z0-9_\-]{11,})")

NOISY_LOGGERS = ("sqlalchemy.engine", "httpcore", "httpx", "aiosqlite")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


def mask_token(token: Optional[str]) -> str:
    """First ten characters only."""
    if not token:
        return "<none>"
    return token[:10] + "..."


def redact_tokens(text: str) -> str:
    """Mask tokens embedded in tracking URLs (/pixel/<token>, /redirect/<token>...)."""
    return _TOKEN_IN_PATH.sub(lambda m: m.group(1) + mask_token(m.group(2)), text)


class TokenRedactionFilter(logging.Filter):
    """Rewrites access-log records so request paths never carry a full token."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_tokens(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        if isinstance(record.msg, str):
            record.msg = redact_tokens(record.msg)
        return True


class StructuredJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key))
            for key in ENGAGEMENT_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install a single JSON stream handler on the root logger. Call once at startup."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    access = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, TokenRedactionFilter) for f in access.filters):
        access.addFilter(TokenRedactionFilter())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
