# tracing.py
# Best-effort tracing on OpenTelemetry.
#
# One trace per run with child spans per iteration and tool dispatch. Spans
# go to whichever TracerProvider the application installed; without one the
# API's no-op tracer is used. Any exception from the tracing backend is
# logged and ignored: tracing must never block or fail the run it observes.

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN, Span, Status, StatusCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PRIMITIVES = (str, bool, int, float)


def span_attributes(values: Mapping[str, Any] | None) -> dict[str, Any]:
    """Flatten arbitrary values into OpenTelemetry attribute types."""
    attributes: dict[str, Any] = {}
    for key, value in (values or {}).items():
        if value is None:
            continue
        if isinstance(value, _PRIMITIVES):
            attributes[key] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            attributes[key] = list(value)
        else:
            attributes[key] = json.dumps(value, default=str, ensure_ascii=False)
    return attributes


class TraceHandle:
    """A started span. All methods are safe to call in any state."""

    def __init__(self, tracer: "Tracer", span: Span, name: str) -> None:
        self._tracer = tracer
        self._span = span
        self.name = name
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def span(self, name: str, attributes: Mapping[str, Any] | None = None) -> "TraceHandle":
        return self._tracer.start(name, attributes, parent=self._span)

    def update(self, **fields: Any) -> None:
        if self._ended:
            return
        self._tracer.guard(self.name, lambda: self._span.set_attributes(span_attributes(fields)))

    def end(self, **fields: Any) -> None:
        """Close the span. An `error` field marks it failed."""
        if self._ended:
            return
        self._ended = True

        def close() -> None:
            self._span.set_attributes(span_attributes(fields))
            error = fields.get("error")
            if error:
                self._span.set_status(Status(StatusCode.ERROR, str(error)))
            else:
                self._span.set_status(Status(StatusCode.OK))
            self._span.end()

        self._tracer.guard(self.name, close)


class Tracer:
    """
    Entry point for run tracing.

    Pass a TracerProvider to route spans somewhere specific (tests use the
    SDK's in-memory exporter); otherwise the global provider is used.
    """

    def __init__(self, tracer_provider: trace.TracerProvider | None = None) -> None:
        self._tracer = trace.get_tracer("careloop", tracer_provider=tracer_provider)

    def trace(self, name: str, attributes: Mapping[str, Any] | None = None) -> TraceHandle:
        return self.start(name, attributes)

    def start(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        parent: Span | None = None,
    ) -> TraceHandle:
        def open_span() -> Span:
            context = trace.set_span_in_context(parent) if parent is not None else None
            return self._tracer.start_span(name, context=context, attributes=span_attributes(attributes))

        span = self.guard(name, open_span)
        return TraceHandle(self, span if span is not None else INVALID_SPAN, name)

    def guard(self, name: str, call: Callable[[], T]) -> T | None:
        try:
            return call()
        except Exception:
            logger.warning("Tracing failed for %s; continuing.", name, exc_info=True)
            return None
