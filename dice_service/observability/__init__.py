"""
Observability Package

The three signals of the service, all exported through OpenTelemetry:
1. TRACES: server span → route span → ``roll`` span
2. METRICS: ``dice.rolls`` counter (plus HTTP server metrics)
3. LOGS: stdlib logging, JSON on stdout and bridged to the OTel log provider

Every log line emitted inside a span carries its trace_id/span_id, which is
what joins the three signals of one request.
"""
from .telemetry import (
    Telemetry,
    TelemetrySetupError,
    TelemetryShutdownError,
    current_trace_context,
    setup_telemetry,
)

__all__ = [
    "Telemetry",
    "TelemetrySetupError",
    "TelemetryShutdownError",
    "current_trace_context",
    "setup_telemetry",
]
