"""OpenTelemetry initialization and span wrappers for calendar sync operations."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "parallel_task"

# True once the global TracerProvider has been installed; OTel refuses to
# override it a second time.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the process.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider
    with an OTLP gRPC exporter on the first call.  Otherwise the global no-op
    provider stays in place.

    Args:
        service_name: Value for the ``service.name`` resource attribute.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it for %s", service_name)
        return trace.get_tracer(_TRACER_NAME)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(_TRACER_NAME)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


# ---------------------------------------------------------------------------
# Span wrapper
# ---------------------------------------------------------------------------


class sync_span:
    """Create an OpenTelemetry span around a calendar sync operation.

    Usable as a context manager or as a decorator on async functions::

        with sync_span("sync", task_id=task_id, kind="task"):
            ...

        @sync_span("drain_queue")
        async def drain(...):
            ...

    The span is named ``calendar.<operation>``; keyword attributes are
    recorded as ``calendar.<key>`` (``None`` values are skipped).  Exceptions
    are recorded on the span and its status set to ERROR before re-raising.
    """

    def __init__(self, operation: str, **attributes: str | int | None) -> None:
        self._operation = operation
        self._attributes = attributes
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(f"calendar.{self._operation}")
        for key, value in self._attributes.items():
            if value is not None:
                self._span.set_attribute(f"calendar.{key}", value)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets a fresh instance so concurrent calls never
        # share _span / _token.
        operation = self._operation
        attributes = dict(self._attributes)

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with sync_span(operation, **attributes):
                return await func(*args, **kwargs)

        return _wrapper
