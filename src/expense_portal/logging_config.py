"""Structured JSON logging for the portal.

Modules log through ``logging.getLogger(__name__)``. :func:`configure_logging`
attaches a :class:`StructuredFormatter` to the ``expense_portal`` logger so
every record becomes one JSON object per line, enriched with the request
context bound through :class:`LogContext`.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TextIO

LOGGER_NAMESPACE = "expense_portal"


class LogContext:
    """Request-scoped fields merged into every structured record."""

    _FIELD_NAMES = ("correlation_id", "actor_id", "expense_id", "site_id")

    _correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
    _actor_id: ContextVar[str | None] = ContextVar("actor_id", default=None)
    _expense_id: ContextVar[str | None] = ContextVar("expense_id", default=None)
    _site_id: ContextVar[str | None] = ContextVar("site_id", default=None)

    @classmethod
    def get_all(cls) -> dict[str, str]:
        ctx: dict[str, str] = {}
        for name in cls._FIELD_NAMES:
            value = getattr(cls, f"_{name}").get()
            if value is not None:
                ctx[name] = value
        return ctx

    @classmethod
    def clear(cls) -> None:
        for name in cls._FIELD_NAMES:
            getattr(cls, f"_{name}").set(None)

    @classmethod
    def bind(cls, **fields: str | None) -> _BoundContext:
        """Set fields for the duration of a ``with`` block."""

        unknown = set(fields).difference(cls._FIELD_NAMES)
        if unknown:
            raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
        return _BoundContext(fields)


class _BoundContext:
    def __init__(self, fields: dict[str, str | None]) -> None:
        self._fields = fields
        self._tokens: dict[str, Token[str | None]] = {}

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            if value is not None:
                self._tokens[name] = getattr(LogContext, f"_{name}").set(value)
        return LogContext

    def __exit__(self, *exc: object) -> None:
        for name, token in self._tokens.items():
            getattr(LogContext, f"_{name}").reset(token)
        self._tokens.clear()


_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Format each record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())
        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            code = getattr(exc, "code", None)
            if code is not None:
                payload["exc_code"] = code
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
    structured: bool = True,
) -> logging.Logger:
    """Install a handler on the package logger (idempotent).

    With ``structured=False`` records are written as plain text lines.
    """

    global _configured
    root = logging.getLogger(LOGGER_NAMESPACE)
    with _lock:
        if _configured:
            return root
        _configured = True
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.propagate = False
    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter() if structured else logging.Formatter(PLAIN_FORMAT))
    root.addHandler(target)
    return root


def reset_logging() -> None:
    """Undo :func:`configure_logging`; used by tests."""

    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(LOGGER_NAMESPACE)
    root.handlers.clear()
    root.setLevel(logging.NOTSET)
    root.propagate = True
