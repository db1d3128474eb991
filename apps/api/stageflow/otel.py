from __future__ import annotations

import os
import threading
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from stageflow.core.config import get_settings

# Request headers copied onto the server span.
_HEADER_ATTRIBUTES = {b"x-correlation-id": "correlation_id", b"x-org-id": "org_id"}

_lock = threading.Lock()
_provider: TracerProvider | None = None
_exporters_attached = False


def tracer_provider(service_name: str) -> TracerProvider:
    """Install the process-wide provider on first use; later calls return the same one."""
    global _provider
    with _lock:
        if _provider is None:
            resource = Resource.create(
                {
                    SERVICE_NAME: service_name,
                    SERVICE_VERSION: os.getenv("APP_VERSION", "0.1.0"),
                    "deployment.environment": get_settings().app_env,
                }
            )
            _provider = TracerProvider(resource=resource)
            trace.set_tracer_provider(_provider)
        return _provider


def _export_processors() -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_attached
    if not enable:
        return None

    provider = tracer_provider(service_name)
    with _lock:
        if not _exporters_attached:
            for processor in _export_processors():
                provider.add_span_processor(processor)
            _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "stageflow-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            attribute = _HEADER_ATTRIBUTES.get(name.lower())
            if attribute:
                span.set_attribute(attribute, value.decode("latin-1"))

    return server_request_hook
