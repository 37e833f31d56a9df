"""OpenTelemetry wiring: exporter setup, FastAPI spans and provider call spans."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from marketpay.common.config import settings

tracer = trace.get_tracer("marketpay.providers")


def setup_tracing(service_name: str) -> None:
    """Register an OTLP/HTTP tracer provider unless tracing is switched off."""

    if not settings.otel_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)


@contextmanager
def provider_span(provider: str, operation: str) -> Iterator[trace.Span]:
    """Client span around one outbound provider call.

    Without a registered provider this is the no-op tracer, so callers never
    need to check `otel_enabled`.
    """

    with tracer.start_as_current_span(
        f"{provider}.{operation}",
        kind=trace.SpanKind.CLIENT,
        attributes={"payment.provider": provider, "payment.operation": operation},
    ) as span:
        yield span
