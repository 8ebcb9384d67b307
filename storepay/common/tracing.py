"""OpenTelemetry wiring for the checkout service and its gateway calls."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from storepay.common.config import settings
from storepay.common.logging import conversation_id_ctx, order_number_ctx

# Probes and scrapes would drown the payment spans.
UNTRACED_URLS = "health,metrics"


def setup_tracing(service_name: str) -> None:
    """Register an OTLP HTTP exporter unless tracing is switched off."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name, "service.namespace": "storepay"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if not settings.tracing_enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


tracer = trace.get_tracer("storepay.checkout")


@contextmanager
def payment_span(name: str, **attributes):
    """Span tagged with the current conversation id and order number."""

    with tracer.start_as_current_span(name) as span:
        conversation_id = conversation_id_ctx.get()
        if conversation_id:
            span.set_attribute("payment.conversation_id", conversation_id)
        order_number = order_number_ctx.get()
        if order_number:
            span.set_attribute("payment.order_number", order_number)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
