"""OpenTelemetry initialization and span wrapper for sync operations."""

from __future__ import annotations

import functools
import logging
import os
from contextvars import Token

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"

# True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider
    with an OTLP gRPC exporter on the first call.  Otherwise the global
    no-op tracer is returned.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it for service=%s", service_name)
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


class sync_span:
    """Create an OpenTelemetry span for one sync operation on one user.

    Usable as a **context manager** or as a **decorator** on async functions::

        with sync_span("sync_full", user_id=user_id):
            ...

    The span is named ``calsync.<operation>`` and carries a
    ``calsync.user_id`` attribute.  Log records emitted inside the span are
    tagged with the same user id.  Exceptions are recorded on the span and
    its status set to ERROR before the exception propagates.
    """

    def __init__(self, operation: str, *, user_id: str | None = None) -> None:
        self._operation = operation
        self._user_id = user_id
        self._span_name = f"calsync.{operation}"
        self._span: trace.Span | None = None
        self._token: object | None = None
        self._user_token: Token | None = None

    def __enter__(self) -> trace.Span:
        from calsync.core.logging import _user_context

        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        self._span.set_attribute("calsync.operation", self._operation)
        if self._user_id is not None:
            self._span.set_attribute("calsync.user_id", self._user_id)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        self._user_token = _user_context.set(self._user_id)
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        from calsync.core.logging import _user_context

        if self._user_token is not None:
            _user_context.reset(self._user_token)
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets a fresh instance so concurrent calls never share span state.
        operation = self._operation
        user_id = self._user_id

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with sync_span(operation, user_id=user_id):
                return await func(*args, **kwargs)

        return _wrapper
