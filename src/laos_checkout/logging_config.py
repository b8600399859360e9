"""JSON logging with checkout context.

The request middleware and the checkout route bind a request id and user id;
every record logged while they are bound carries them, so one checkout
attempt can be followed across stages, the gateway call and its webhooks.
"""
from __future__ import annotations

import hashlib
import json
import logging
import secrets
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
    name: ContextVar(name, default=None)
    for name in ("correlation_id", "request_id", "user_id", "order_id")
}

# Everything a bare LogRecord carries; anything else on a record came from extra=
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


class CorrelationIDFilter(logging.Filter):
    """Copies the bound checkout context onto each record.

    Values passed explicitly through ``extra`` are kept.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT.items():
            if getattr(record, name, None) is None:
                setattr(record, name, var.get())
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: standard fields, bound context, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if key in _CONTEXT and not value:
                continue
            log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIDFilter())
    root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def generate_error_id() -> str:
    """Support-facing id for an unexpected error: ``ERR-<epoch ms>-<9 hex>``."""
    return f"ERR-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def generate_trace_id() -> str:
    """Webhook trace id: ``<epoch ms base36>-<7 random>-<8 hex digest>``."""
    stamp = _base36(int(time.time() * 1000))
    random_part = _base36(secrets.randbits(36)).rjust(7, "0")[:7]
    digest = hashlib.sha256(f"{stamp}-{random_part}".encode()).hexdigest()[:8]
    return f"{stamp}-{random_part}-{digest}"


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if not value:
            return out


class LogContext:
    """Binds context fields for the duration of a ``with`` block.

    Usage:
        with LogContext(user_id=user.id):
            await service.checkout(user.id, request)
    """

    def __init__(self, **values: Optional[str]):
        unknown = set(values) - set(_CONTEXT)
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")
        self._values = values
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        for name, value in self._values.items():
            if value:
                var = _CONTEXT[name]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
