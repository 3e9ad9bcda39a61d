"""Logging and tracing setup for the gem mirror proxy."""

from __future__ import annotations

import logging
from typing import Dict

import httpx
import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars

from .settings import GemMirrorSettings


SERVICE_NAMESPACE = "gemmirror"
# Probes and scrapes would otherwise dominate the trace volume.
UNTRACED_PATHS = "healthz,metrics"

_logging_configured = False
_tracer_provider: TracerProvider | None = None


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(settings: GemMirrorSettings, service_name: str) -> None:
    """Route structlog through stdlib logging as one JSON object per line.

    Every event carries the service name and the configured default upstream, so
    log lines from several mirrors can be told apart.
    """

    global _logging_configured
    level = _log_level(settings.log_level)
    if _logging_configured:
        logging.getLogger().setLevel(level)
    else:
        logging.basicConfig(level=level, format="%(message)s")
        _logging_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name, default_upstream=settings.rubygems_url)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``key=value,key=value`` as accepted by OTLP exporters; malformed pairs are skipped."""
    pairs: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def tracing_resource(settings: GemMirrorSettings, service_name: str) -> Resource:
    return Resource.create(
        {
            "service.name": service_name,
            "service.namespace": SERVICE_NAMESPACE,
            "gemmirror.default_upstream": settings.rubygems_url,
            "gemmirror.storage_path": str(settings.gem_cache_path),
        }
    )


def span_exporter(settings: GemMirrorSettings) -> SpanExporter:
    if settings.otel_exporter_endpoint:
        return OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_headers),
        )
    return InMemorySpanExporter()


def configure_tracing(settings: GemMirrorSettings, service_name: str) -> TracerProvider:
    """Install the process-wide tracer provider once and return it.

    A provider installed earlier (by this function or by the host process) is
    reused as is.
    """

    global _tracer_provider
    if _tracer_provider is not None:
        return _tracer_provider

    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        _tracer_provider = current
        return current

    ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=tracing_resource(settings, service_name),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    exporter = span_exporter(settings)
    if isinstance(exporter, InMemorySpanExporter):
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    return provider


def instrument_upstream_client(client: httpx.AsyncClient) -> httpx.AsyncClient:
    """Trace the upstream fetches made through ``client``; other httpx clients are left alone."""
    HTTPXClientInstrumentor.instrument_client(client, tracer_provider=trace.get_tracer_provider())
    return client


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=UNTRACED_PATHS,
    )
