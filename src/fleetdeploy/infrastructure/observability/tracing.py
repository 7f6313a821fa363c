"""OpenTelemetry tracing configuration."""

from __future__ import annotations

import sys

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
)
from opentelemetry.semconv.resource import ResourceAttributes

from fleetdeploy.config import ObservabilitySettings


def setup_tracing(settings: ObservabilitySettings) -> bool:
    """Configure OpenTelemetry tracing. Returns False when tracing is disabled."""
    if not settings.tracing_enabled:
        return False

    resource = Resource.create({
        ResourceAttributes.SERVICE_NAME: settings.service_name,
        ResourceAttributes.SERVICE_VERSION: "1.0.0",
    })

    provider = TracerProvider(resource=resource)

    # Console exporter for local runs; stdout is reserved for command output
    provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))

    # OTLP exporter is an optional extra (fleetdeploy[otlp])
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    except ImportError:
        pass

    trace.set_tracer_provider(provider)
    return True


def get_tracer(name: str = "fleetdeploy") -> trace.Tracer:
    """Get a tracer instance."""
    return trace.get_tracer(name)
