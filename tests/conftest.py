"""
Pytest configuration and fixtures for dice service tests.

Every test gets its own telemetry bundle backed by in-memory exporters and
synchronous processors, so finished spans and log records are visible as
soon as the code under test returns.
"""
import random
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk._logs.export import InMemoryLogExporter
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from dice_service.api.main import create_app
from dice_service.config import Settings
from dice_service.observability.telemetry import Telemetry, setup_telemetry


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every settings-driven exporter disabled."""
    return Settings(
        service_name="dice-test",
        environment="test",
        host="127.0.0.1",
        port=0,
        log_level="INFO",
        traces_exporter="none",
        metrics_exporter="none",
        logs_exporter="none",
        batch_export=False,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def log_exporter() -> InMemoryLogExporter:
    return InMemoryLogExporter()


@pytest.fixture
def telemetry(test_settings, span_exporter, metric_reader, log_exporter) -> Telemetry:
    """Telemetry bundle that never touches the process-wide providers."""
    bundle = setup_telemetry(
        test_settings,
        span_exporter=span_exporter,
        metric_reader=metric_reader,
        log_exporter=log_exporter,
        install_globals=False,
    )
    yield bundle
    bundle.shutdown()


@pytest.fixture
def app(telemetry) -> FastAPI:
    return create_app(telemetry, rng=random.Random(1234))


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


def spans_named(exporter: InMemorySpanExporter, name: str) -> List[ReadableSpan]:
    return [span for span in exporter.get_finished_spans() if span.name == name]


def roll_counts(reader: InMemoryMetricReader) -> Dict[int, int]:
    """Cumulative dice.rolls value per roll.value."""
    counts: Dict[int, int] = {}
    data = reader.get_metrics_data()
    if data is None:
        return counts
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name != "dice.rolls":
                    continue
                for point in metric.data.data_points:
                    counts[point.attributes["roll.value"]] = point.value
    return counts


def roll_logs(exporter: InMemoryLogExporter, player: Optional[str] = None) -> list:
    """Log records emitted by the dice roller, optionally for one message."""
    records = [
        log_data.log_record
        for log_data in exporter.get_finished_logs()
        if "rolling the dice" in str(log_data.log_record.body)
    ]
    if player is not None:
        records = [r for r in records if r.body == f"{player} is rolling the dice"]
    return records
