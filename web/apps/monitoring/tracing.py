"""OpenTelemetry tracing helpers.

Spans are created through the OpenTelemetry API. Until ``configure_tracing``
installs an SDK provider the API hands out non-recording spans, so tracing
never changes the outcome of an order operation.
"""

import logging
from contextlib import contextmanager
from typing import Any

from opentelemetry import propagate, trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("orders")


def configure_tracing(service_name: str, exporter: str) -> bool:
    """Install an SDK tracer provider for the process.

    Args:
        service_name: Value for the ``service.name`` resource attribute.
        exporter: ``"console"`` to print finished spans; anything else
            leaves the no-op provider in place.

    Returns:
        bool: True when a provider was installed.
    """
    if exporter != "console":
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    logger.info("tracing configured", extra={"exporter": exporter, "service": service_name})
    return True


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None, kind=trace.SpanKind.INTERNAL):
    """Open a span as the current span; exceptions mark it as errored and re-raise."""
    with tracer.start_as_current_span(name, kind=kind, record_exception=False) as span:
        if attributes:
            span.set_attributes(attributes)
        try:
            yield span
        except Exception as e:
            span.set_attribute("error", True)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def trace_headers() -> dict[str, str]:
    """W3C trace context headers for the current span, for outbound requests."""
    carrier: dict[str, str] = {}
    propagate.inject(carrier)
    return carrier


def current_trace_id() -> str:
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return "-"
    return format(ctx.trace_id, "032x")
