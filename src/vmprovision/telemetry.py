"""
OpenTelemetry tracing for provisioning runs.

The runner always creates spans through the OTel API. Unless
``configure_tracing`` has installed an SDK provider those spans are no-ops,
so tracing costs nothing when no collector is configured.

Usage::

    from vmprovision.telemetry import configure_tracing, shutdown_tracing

    if configure_tracing("localhost:4317"):
        ...  # run pipeline
        shutdown_tracing()
"""

from __future__ import annotations

import logging

from opentelemetry import trace as otel_trace

__all__ = ["get_tracer", "add_span_event", "configure_tracing", "shutdown_tracing"]

logger = logging.getLogger(__name__)

TRACER_NAME = "vmprovision"
FLUSH_TIMEOUT_MS = 10000


def get_tracer() -> otel_trace.Tracer:
    return otel_trace.get_tracer(TRACER_NAME)


def add_span_event(name: str, attributes: dict[str, str | int | float | bool]) -> None:
    """Add an event to the current span if it is recording."""
    span = otel_trace.get_current_span()
    if span and span.is_recording():
        span.add_event(name=name, attributes=attributes)


def configure_tracing(endpoint: str, service_name: str = "vmprovision") -> bool:
    """
    Install a global TracerProvider exporting to an OTLP gRPC endpoint.

    Args:
        endpoint: OTLP endpoint (e.g., localhost:4317)
        service_name: ``service.name`` resource attribute

    Returns:
        True if configuration succeeded, False otherwise
    """
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({
            "service.name": service_name,
            "service.namespace": "vmprovision",
        })
        tracer_provider = TracerProvider(resource=resource)
        span_exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        otel_trace.set_tracer_provider(tracer_provider)
        return True
    except Exception as e:
        logger.warning("Failed to configure OTel tracing: %s", e)
        return False


def shutdown_tracing() -> None:
    """Flush and shut down the tracer provider so all spans are exported."""
    tracer_provider = otel_trace.get_tracer_provider()
    try:
        if hasattr(tracer_provider, "force_flush"):
            tracer_provider.force_flush(timeout_millis=FLUSH_TIMEOUT_MS)
        if hasattr(tracer_provider, "shutdown"):
            tracer_provider.shutdown()
    except Exception as e:
        # Export problems never affect the provisioning result
        logger.warning("Failed to flush OTel spans: %s", e)
