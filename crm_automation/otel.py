"""Tracing setup.

Lifecycle dispatches open ``crm.trigger.dispatch`` spans through ``get_tracer``;
they are dropped until one of the setup functions installs a provider.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_automation.context import CORRELATION_HEADER


_provider: TracerProvider | None = None
_exporters_installed = False


def _tracer_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {"service.name": service_name, "service.version": os.getenv("APP_VERSION", "0.1.0")}
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def _processors_from_env() -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_installed

    if not enable:
        return None
    provider = _tracer_provider(service_name)
    if not _exporters_installed:
        for processor in _processors_from_env():
            provider.add_span_processor(processor)
        _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "crm-automation") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def get_fastapi_server_request_hook() -> Callable[[Any, dict[str, Any]], None]:
    header = CORRELATION_HEADER.encode("latin-1")

    def server_request_hook(span: Any, scope: dict[str, Any]) -> None:
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            if name == header:
                span.set_attribute("correlation_id", value.decode("latin-1"))
                return

    return server_request_hook
