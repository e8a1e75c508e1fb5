"""
OpenTelemetry export for the extraction server.

The Job Controller opens one span per pipeline stage through
``opentelemetry.trace``; until setup_telemetry() installs a provider those
spans go to the no-op tracer.
"""
import logging
import os
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter

from archivist.core.config import settings

_tracer_provider: Optional[TracerProvider] = None


def setup_telemetry(service_name: str = "archivist-extraction") -> TracerProvider:
    """
    Export stage spans and pipeline log records over OTLP/HTTP.

    Safe to call more than once; the first call wins.

    Args:
        service_name: Resource service name reported to the collector

    Returns:
        The installed TracerProvider
    """
    global _tracer_provider
    if _tracer_provider is not None:
        return _tracer_provider

    resource = Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: settings.APP_VERSION})
    collector = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318").rstrip("/")

    # Traces: one span per job stage
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{collector}/v1/traces")))
    trace.set_tracer_provider(provider)

    # Logs: only the pipeline's own loggers, not third-party chatter
    logger_provider = LoggerProvider(resource=resource)
    logger_provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=f"{collector}/v1/logs"))
    )
    logging.getLogger("archivist").addHandler(LoggingHandler(level=logging.INFO, logger_provider=logger_provider))

    _tracer_provider = provider
    return provider
