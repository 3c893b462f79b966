from __future__ import annotations

import contextvars
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any

_run_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)
_file_name_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "file_name", default=None
)
_CONTEXT_FIELDS = (("run_id", _run_id_var), ("file_name", _file_name_var))

LOGGER_NAME = "tfl_expenses"


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, event, then the event fields."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None) or record.getMessage(),
        }
        payload.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level if level in logging.getLevelNamesMapping() else logging.INFO)
    logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def set_run_context(run_id: str | None) -> contextvars.Token:
    return _run_id_var.set(run_id)


def reset_run_context(token: contextvars.Token) -> None:
    _run_id_var.reset(token)


def set_file_context(file_name: str | None) -> contextvars.Token:
    return _file_name_var.set(file_name)


def reset_file_context(token: contextvars.Token) -> None:
    _file_name_var.reset(token)


def _event_fields(fields: dict[str, Any]) -> dict[str, Any]:
    merged = {name: var.get() for name, var in _CONTEXT_FIELDS}
    merged.update(fields)
    return {key: value for key, value in merged.items() if value is not None}


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    logger.log(level, event, extra={"event": event, "fields": _event_fields(fields)})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    logger.exception(event, extra={"event": event, "fields": _event_fields(fields)})


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
