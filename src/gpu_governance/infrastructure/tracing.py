"""OpenTelemetry tracing configuration for the governance engine."""

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from gpu_governance import __version__
from gpu_governance.infrastructure.config import Config, get_config


def setup_tracing(config: Config | None = None) -> trace.Tracer:
    """Configure OpenTelemetry tracing for the governance engine."""
    config = config or get_config()

    resource = Resource.create(
        {
            "service.name": "gpu_governance",
            "service.version": __version__,
            "deployment.environment": config.observability.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    if config.observability.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=config.observability.otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    else:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    return trace.get_tracer("gpu_governance")
