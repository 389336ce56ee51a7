"""OpenTelemetry instrumentation for the webhook service.

Activated only when ``otel_exporter_endpoint`` is set in settings:
  - TracerProvider with OTLP HTTP exporter
  - aiohttp server auto-instrumentation (a span per API request)
  - ``get_tracer`` for manual spans (one span per delivery attempt).
"""
from __future__ import annotations

import structlog
from aiohttp import web
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.aiohttp_server import AioHttpServerInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)


def setup_otel(settings: Settings) -> TracerProvider | None:
    """Initialise tracing if ``otel_exporter_endpoint`` is configured.

    Must run before the aiohttp application is created so the server
    instrumentation wraps it.
    """
    endpoint = settings.otel_exporter_endpoint
    if not endpoint:
        logger.info("otel_exporter_endpoint not set, OpenTelemetry tracing disabled")
        return None

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: settings.app_name}))
    exporter = OTLPSpanExporter(endpoint=f"{str(endpoint).rstrip('/')}/v1/traces")
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    AioHttpServerInstrumentor().instrument()

    logger.info("OpenTelemetry tracing enabled", endpoint=str(endpoint), service=settings.app_name)
    return provider


def create_otel_shutdown(provider: TracerProvider):
    """``on_cleanup`` hook flushing pending spans."""

    async def shutdown_otel(_app: web.Application) -> None:
        provider.shutdown()
        logger.info("OpenTelemetry tracer provider shut down")

    return shutdown_otel


def get_tracer(name: str = __name__) -> trace.Tracer:
    """Tracer for manual spans; a no-op tracer while tracing is disabled."""
    return trace.get_tracer(name)
