"""
Structured Logging Configuration

Every line written to stdout is a JSON object. When the line is emitted
inside an active span it carries that span's trace_id/span_id, so a log
line can be joined with the trace and the counter points of the same
request after the fact.

Example:
    {"timestamp": "...", "level": "INFO", "logger": "dice_service.dice",
     "msg": "Alice is rolling the dice", "result": 4,
     "trace_id": "4bf92f3577b34da6a3ce929d0e0e4736", "span_id": "00f067aa0ba902b7"}
"""

import logging
import sys
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from dice_service.observability.telemetry import current_trace_context

SENSITIVE_KEYS = ("password", "secret", "api_key", "token", "authorization")


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that injects trace_id and span_id into every log."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.update(current_trace_context())

        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['timestamp'] = self.formatTime(record, self.datefmt)

        self.scrub_sensitive_data(log_record)

    def scrub_sensitive_data(self, log_record: Dict[str, Any]) -> Dict[str, Any]:
        """Mask values of keys that must never reach the log store."""
        for key in SENSITIVE_KEYS:
            if key in log_record:
                if isinstance(log_record[key], str) and len(log_record[key]) > 4:
                    log_record[key] = f"***{log_record[key][-4:]}"
                else:
                    log_record[key] = "***REDACTED***"

        return log_record


def setup_logging(level: str = "INFO", service_name: str = "unknown", fmt: str = "json") -> None:
    """
    Configure application logging on the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name to include in the startup line
        fmt: "json" for structured output, "console" for a human-readable line
    """
    handler = logging.StreamHandler(sys.stdout)

    if fmt == "json":
        formatter: logging.Formatter = CorrelationJsonFormatter(
            fmt='%(timestamp)s %(level)s %(logger)s %(message)s',
            rename_fields={'message': 'msg'},
        )
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized for {service_name}")
