from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from orgsuite.core.config import get_settings

# request headers copied onto the server span, keyed by span attribute
_SCOPE_HEADERS = {
    "correlation_id": b"x-correlation-id",
    "tenant_id": b"x-tenant-id",
    "scope_entity_id": b"x-entity-id",
}

_exporters_attached = False
_provider: TracerProvider | None = None


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    settings = get_settings()
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "orgsuite",
            "service.version": os.getenv("APP_VERSION", "0.1.0"),
            "deployment.environment": settings.app_env,
        }
    )
    _provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_attached

    if not enable:
        return None

    provider = _provider_for(service_name)
    if _exporters_attached:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "orgsuite-api") -> InMemorySpanExporter:
    """Attach an in-memory exporter so tests can inspect finished spans."""
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        for attribute, header in _SCOPE_HEADERS.items():
            raw = headers.get(header)
            if raw:
                span.set_attribute(attribute, raw.decode("utf-8", errors="replace")[:128])

    return server_request_hook
