"""
Tests for environment-driven settings and the process entry point.
"""
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from dice_service import __main__ as entry_point
from dice_service.config import Settings
from dice_service.observability.telemetry import TelemetrySetupError


class TestSettings:

    @pytest.mark.unit
    def test_defaults(self, monkeypatch) -> None:
        monkeypatch.delenv("DICE_PORT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.port == 8080
        assert settings.read_timeout == 1.0
        assert settings.write_timeout == 10.0
        assert settings.bind_address == "0.0.0.0:8080"

    @pytest.mark.unit
    def test_environment_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("DICE_PORT", "9090")
        monkeypatch.setenv("DICE_TRACES_EXPORTER", "otlp")
        monkeypatch.setenv("DICE_LOG_LEVEL", "debug")

        settings = Settings(_env_file=None)

        assert settings.port == 9090
        assert settings.traces_exporter == "otlp"
        assert settings.log_level == "DEBUG"

    @pytest.mark.unit
    @pytest.mark.parametrize("field, value", [
        ("log_level", "LOUD"),
        ("traces_exporter", "zipkin"),
        ("read_timeout", 0),
    ])
    def test_invalid_values_rejected(self, field, value) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


class TestEntryPoint:

    @pytest.mark.unit
    def test_startup_failure_exits_non_zero(self, test_settings) -> None:
        with patch.object(entry_point, "get_settings", return_value=test_settings), \
                patch.object(entry_point, "setup_logging"), \
                patch.object(entry_point, "run_service", side_effect=TelemetrySetupError("collector down")):
            assert entry_point.main() == 1

    @pytest.mark.unit
    def test_clean_shutdown_exits_zero(self, test_settings) -> None:
        async def serve_and_stop(settings):
            return None

        with patch.object(entry_point, "get_settings", return_value=test_settings), \
                patch.object(entry_point, "setup_logging"), \
                patch.object(entry_point, "run_service", side_effect=serve_and_stop):
            assert entry_point.main() == 0
