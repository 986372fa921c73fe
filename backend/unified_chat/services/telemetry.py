"""OpenTelemetry instrumentation for the chat layer.

One span per chat request and one child span per provider attempt. Without
``setup_telemetry()`` the global no-op provider is used and spans cost
nothing.
"""

import logging
import os
from collections.abc import Mapping
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from unified_chat.exceptions import ChatError

logger = logging.getLogger(__name__)

SERVICE_NAME = "unified-chat"
SERVICE_VERSION = "0.1.0"


def setup_telemetry(
    service_name: str = SERVICE_NAME,
    otlp_endpoint: str | None = None,
    console_export: bool = False,
) -> TracerProvider:
    """Initialize OpenTelemetry with tracing.

    Args:
        service_name: Name of this service for traces.
        otlp_endpoint: OTLP collector endpoint (e.g., http://localhost:4317).
            If None, uses OTEL_EXPORTER_OTLP_ENDPOINT env var.
        console_export: Whether to also export to console for debugging.

    Returns:
        Configured TracerProvider.
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": SERVICE_VERSION,
        }
    )
    provider = TracerProvider(resource=resource)

    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    endpoint = otlp_endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
            logger.info(f"OTLP tracing enabled: {endpoint}")
        except ImportError:
            logger.warning("OTLP exporter not installed (pip install unified-chat[otlp])")

    trace.set_tracer_provider(provider)
    logger.info(f"Telemetry initialized for {service_name}")
    return provider


def get_tracer(name: str = __name__) -> Tracer:
    """Get a tracer for creating spans."""
    return trace.get_tracer(name, SERVICE_VERSION)


def get_current_trace_id() -> str | None:
    """Hex trace ID of the active span, or None when not recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        if ctx.is_valid:
            return format(ctx.trace_id, "032x")
    return None


def set_span_attributes(span: Span, attributes: Mapping[str, Any]) -> None:
    """Set attributes, skipping None values (OTel rejects them)."""
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def mark_span_error(span: Span, error: ChatError) -> None:
    span.set_attribute("chat.error.code", error.code.value)
    span.set_attribute("chat.error.retryable", error.retryable)
    span.set_status(Status(StatusCode.ERROR, error.message))
