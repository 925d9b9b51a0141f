"""Tracing helpers built on the OpenTelemetry API.

The API package ships a no-op tracer provider, so spans cost nothing until a
deployment installs an SDK and exporter (for example via
``opentelemetry-instrument``). Nothing here configures an exporter.

PII and sensitive data guidance:
- NEVER put generated copy, reasoning text or remembered facts in span
  attributes or span names
- Record sizes and counts instead (``buffer.length``, ``items.count``)
- Use the stream key and correlation ID to link traces to log entries
"""

from __future__ import annotations

from opentelemetry import trace
from opentelemetry.trace import Tracer


def get_tracer(name: str) -> Tracer:
    """Get an OpenTelemetry tracer for custom instrumentation.

    Args:
        name: The name of the tracer, typically ``__name__`` of the caller.

    Example:
        from core.observability import get_tracer

        tracer = get_tracer(__name__)

        def parse(raw: str) -> ParsedResponse:
            with tracer.start_as_current_span("stream.parse") as span:
                span.set_attribute("buffer.length", len(raw))
                ...
    """
    return trace.get_tracer(name)
