from typing import Optional, Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

_provider_installed = False


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out ASGI body spans.

    A proxied download produces one ``http.response.body`` span per chunk,
    which buries the ``proxy_request`` span in noise.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type")
                in ("http.response.body", "http.request")
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def parse_otlp_headers(raw: str) -> Optional[dict]:
    headers = {}
    for entry in raw.split(","):
        if "=" in entry:
            key, value = entry.split("=", 1)
            if key.strip():
                headers[key.strip()] = value.strip()
    return headers or None


def configure_tracing(
    app: FastAPI, service_name: str, otlp_endpoint: Optional[str], otlp_headers: str = ""
) -> None:
    """Install the tracer provider once per process and instrument ``app``."""
    global _provider_installed
    if not _provider_installed:
        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        if otlp_endpoint:
            exporter = OTLPSpanExporter(
                endpoint=otlp_endpoint, headers=parse_otlp_headers(otlp_headers)
            )
            provider.add_span_processor(BatchSpanProcessor(FilteringSpanExporter(exporter)))
        trace.set_tracer_provider(provider)
        _provider_installed = True

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,ready")
