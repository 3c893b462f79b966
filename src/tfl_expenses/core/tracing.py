from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from tfl_expenses.core.config import settings
from tfl_expenses.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)


class Span(Protocol):
    def end(self, **output: Any) -> None: ...


class Tracer(Protocol):
    def begin(self, name: str, metadata: dict[str, Any] | None = None) -> Span: ...


class _NoopSpan:
    def end(self, **output: Any) -> None:
        return None


class NoopTracer:
    """Tracer used when tracing is disabled; every span is a no-op."""

    def begin(self, name: str, metadata: dict[str, Any] | None = None) -> Span:
        return _NoopSpan()


class _LoggedSpan:
    def __init__(self, name: str, metadata: dict[str, Any]) -> None:
        self.name = name
        self.metadata = metadata
        self._start = time.monotonic()
        self._ended = False

    def end(self, **output: Any) -> None:
        if self._ended:
            return
        self._ended = True
        log_event(
            logger,
            "trace.span.finish",
            level=logging.DEBUG,
            span=self.name,
            duration_ms=monotonic_ms(self._start),
            **{**self.metadata, **output},
        )


class LoggingTracer:
    """Emits one structured log event per finished span."""

    def begin(self, name: str, metadata: dict[str, Any] | None = None) -> Span:
        return _LoggedSpan(name, dict(metadata or {}))


def get_tracer() -> Tracer:
    if settings.tracing_enabled:
        return LoggingTracer()
    return NoopTracer()
