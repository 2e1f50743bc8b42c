"""
OpenTelemetry Provider Bundle

Builds the three providers that back every signal this service emits:
- TRACES: TracerProvider → span processor → exporter
- METRICS: MeterProvider → metric reader (periodic push or Prometheus pull)
- LOGS: LoggerProvider → log record processor → exporter, fed by stdlib logging

All three share one Resource, so spans, counter points and log records from
this process carry the same service.name/service.version.

LIFECYCLE:
    telemetry = setup_telemetry(settings)   # once, before serving traffic
    ...
    telemetry.shutdown()                    # once, after the server drained

Components receive the ``Telemetry`` object explicitly (FastAPI app state).
Registering the providers globally is only done so third-party
instrumentation that calls ``trace.get_tracer(...)`` ends up in the same
pipeline.
"""

import logging
import threading
from typing import Dict, List, Optional

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    ConsoleLogExporter,
    LogExporter,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import (
    DEPLOYMENT_ENVIRONMENT,
    SERVICE_NAME,
    SERVICE_VERSION,
    Resource,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from dice_service.config import Settings

logger = logging.getLogger(__name__)


class TelemetrySetupError(Exception):
    """Raised when a provider or exporter cannot be constructed."""

    pass


class TelemetryShutdownError(Exception):
    """Raised with every failure collected while shutting the providers down."""

    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        details = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} telemetry provider(s) failed to shut down: {details}")


def create_resource(settings: Settings) -> Resource:
    """
    Creates an OpenTelemetry Resource with service metadata.

    Resource attributes are attached to every span, metric point and log
    record exported by this process.
    """
    return Resource(attributes={
        SERVICE_NAME: settings.service_name,
        SERVICE_VERSION: settings.service_version,
        DEPLOYMENT_ENVIRONMENT: settings.environment,
    })


def install_propagator() -> None:
    """Install W3C trace-context + baggage as the process-wide text-map propagator."""
    set_global_textmap(CompositePropagator([
        TraceContextTextMapPropagator(),
        W3CBaggagePropagator(),
    ]))


def current_trace_context() -> Dict[str, str]:
    """
    Extract current trace ID and span ID for correlation.

    Returns:
        Dict with trace_id and span_id (or empty if no active trace)
    """
    span = trace.get_current_span()
    ctx = span.get_span_context()

    if ctx.is_valid:
        return {
            "trace_id": format(ctx.trace_id, "032x"),
            "span_id": format(ctx.span_id, "016x"),
        }
    return {}


# ============================================================================
# Exporter selection
# ============================================================================

def _span_exporter(settings: Settings) -> Optional[SpanExporter]:
    if settings.traces_exporter == "otlp":
        return OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=True)
    if settings.traces_exporter == "console":
        return ConsoleSpanExporter()
    return None


def _metric_reader(settings: Settings) -> Optional[MetricReader]:
    if settings.metrics_exporter == "prometheus":
        # Pull model: collected on each scrape of /metrics
        return PrometheusMetricReader()
    if settings.metrics_exporter == "otlp":
        exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint, insecure=True)
    elif settings.metrics_exporter == "console":
        exporter = ConsoleMetricExporter()
    else:
        return None
    return PeriodicExportingMetricReader(
        exporter, export_interval_millis=settings.metric_export_interval_ms
    )


def _log_exporter(settings: Settings) -> Optional[LogExporter]:
    if settings.logs_exporter == "otlp":
        return OTLPLogExporter(endpoint=settings.otlp_endpoint, insecure=True)
    if settings.logs_exporter == "console":
        return ConsoleLogExporter()
    return None


# ============================================================================
# The bundle
# ============================================================================

class Telemetry:
    """
    Owns the tracer, meter and logger providers of the process.

    ``shutdown()`` flushes and closes all three. It keeps going when one of
    them fails and raises a single ``TelemetryShutdownError`` afterwards.
    Calling it again is a no-op.
    """

    def __init__(
        self,
        resource: Resource,
        tracer_provider: TracerProvider,
        meter_provider: MeterProvider,
        logger_provider: LoggerProvider,
        log_level: str = "INFO",
    ):
        self.resource = resource
        self.tracer_provider = tracer_provider
        self.meter_provider = meter_provider
        self.logger_provider = logger_provider
        self._log_level = log_level
        self._log_handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
        self._bridged_loggers: List[logging.Logger] = []
        self._lock = threading.Lock()
        self._shut_down = False

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def get_tracer(self, name: str) -> trace.Tracer:
        return self.tracer_provider.get_tracer(name)

    def get_meter(self, name: str) -> metrics.Meter:
        return self.meter_provider.get_meter(name)

    def get_logger(self, name: str) -> logging.Logger:
        """
        Return the stdlib logger ``name`` bridged to the OTel log provider.

        Records emitted inside an active span carry its trace/span id.
        """
        bridged = logging.getLogger(name)
        with self._lock:
            if self._log_handler not in bridged.handlers:
                bridged.addHandler(self._log_handler)
                bridged.setLevel(self._log_level)
                self._bridged_loggers.append(bridged)
        return bridged

    def install_globals(self) -> None:
        """Register the providers as the process-wide defaults."""
        trace.set_tracer_provider(self.tracer_provider)
        metrics.set_meter_provider(self.meter_provider)
        set_logger_provider(self.logger_provider)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Push everything buffered so far to the exporters."""
        flushed = self.tracer_provider.force_flush(timeout_millis)
        flushed = self.meter_provider.force_flush(timeout_millis) and flushed
        flushed = self.logger_provider.force_flush(timeout_millis) and flushed
        return flushed

    def shutdown(self) -> None:
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
            bridged, self._bridged_loggers = self._bridged_loggers, []

        # Stop feeding the log pipeline before it closes
        for bridged_logger in bridged:
            bridged_logger.removeHandler(self._log_handler)

        errors: List[BaseException] = []
        for name, provider in (
            ("tracer", self.tracer_provider),
            ("meter", self.meter_provider),
            ("logger", self.logger_provider),
        ):
            try:
                provider.shutdown()
            except Exception as e:
                logger.error(f"{name} provider shutdown failed: {e}")
                errors.append(e)

        if errors:
            raise TelemetryShutdownError(errors)
        logger.info("Telemetry providers shut down")


def setup_telemetry(
    settings: Settings,
    *,
    span_exporter: Optional[SpanExporter] = None,
    metric_reader: Optional[MetricReader] = None,
    log_exporter: Optional[LogExporter] = None,
    install_globals: bool = True,
) -> Telemetry:
    """
    Initializes tracing, metrics and log export for the service.

    Exporters passed explicitly take precedence over the ones named in
    ``settings`` (tests pass in-memory exporters here).

    Raises:
        TelemetrySetupError: if any provider or exporter fails to build.
            Providers built before the failure are shut down first.
    """
    install_propagator()
    resource = create_resource(settings)
    built = []

    try:
        tracer_provider = TracerProvider(resource=resource)
        built.append(tracer_provider)
        if span_exporter is None:
            span_exporter = _span_exporter(settings)
        if span_exporter is not None:
            if settings.batch_export:
                tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
            else:
                tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))

        if metric_reader is None:
            metric_reader = _metric_reader(settings)
        readers = [metric_reader] if metric_reader is not None else []
        meter_provider = MeterProvider(resource=resource, metric_readers=readers)
        built.append(meter_provider)

        logger_provider = LoggerProvider(resource=resource)
        built.append(logger_provider)
        if log_exporter is None:
            log_exporter = _log_exporter(settings)
        if log_exporter is not None:
            if settings.batch_export:
                logger_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))
            else:
                logger_provider.add_log_record_processor(SimpleLogRecordProcessor(log_exporter))
    except Exception as e:
        for provider in reversed(built):
            try:
                provider.shutdown()
            except Exception as cleanup_error:
                logger.warning(f"Cleanup after failed telemetry setup: {cleanup_error}")
        raise TelemetrySetupError(f"Failed to initialize telemetry: {e}") from e

    telemetry = Telemetry(
        resource, tracer_provider, meter_provider, logger_provider, log_level=settings.log_level
    )
    if install_globals:
        telemetry.install_globals()

    logger.info(
        f"Telemetry initialized for {settings.service_name} "
        f"(traces={settings.traces_exporter}, metrics={settings.metrics_exporter}, "
        f"logs={settings.logs_exporter})"
    )
    return telemetry
