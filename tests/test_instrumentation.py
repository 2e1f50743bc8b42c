"""
Tests for the two HTTP instrumentation layers (server span, route span).
"""
import pytest
from opentelemetry.trace import SpanKind

from conftest import spans_named


def server_spans(span_exporter):
    return [span for span in span_exporter.get_finished_spans() if span.kind == SpanKind.SERVER]


class TestSpanNesting:
    """Server span → route span → roll span, one of each per request."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dice_request_span_tree(self, client, span_exporter) -> None:
        await client.get("/dice", params={"player": "Alice"})

        (server,) = server_spans(span_exporter)
        (route,) = spans_named(span_exporter, "/dice")
        (roll,) = spans_named(span_exporter, "roll")

        assert route.parent.span_id == server.context.span_id
        assert roll.parent.span_id == route.context.span_id
        assert server.context.trace_id == route.context.trace_id == roll.context.trace_id

        # Inner spans end before outer ones
        assert roll.end_time <= route.end_time <= server.end_time

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_route_pattern_tagged_on_both_layers(self, client, span_exporter) -> None:
        await client.get("/dice/Alice")

        (server,) = server_spans(span_exporter)
        (route,) = spans_named(span_exporter, "/dice/{player}")

        assert route.attributes["http.route"] == "/dice/{player}"
        assert server.attributes["http.route"] == "/dice/{player}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_greeting_gets_route_span(self, client, span_exporter) -> None:
        await client.get("/")

        (server,) = server_spans(span_exporter)
        (route,) = spans_named(span_exporter, "/")
        assert route.parent.span_id == server.context.span_id
        assert spans_named(span_exporter, "roll") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unmatched_request_still_gets_server_span(self, client, span_exporter) -> None:
        response = await client.get("/no-such-route")

        assert response.status_code == 404
        (server,) = server_spans(span_exporter)
        assert server.end_time is not None
        # No route matched, so no route-level span
        assert [s for s in span_exporter.get_finished_spans() if s.name.startswith("/")] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_server_span_per_request(self, client, span_exporter) -> None:
        for _ in range(3):
            await client.get("/dice")

        assert len(server_spans(span_exporter)) == 3
        assert len(spans_named(span_exporter, "/dice")) == 3
        assert len(spans_named(span_exporter, "roll")) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metrics_endpoint_not_traced(self, client, span_exporter) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert server_spans(span_exporter) == []


class TestTraceContextPropagation:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_incoming_traceparent_is_continued(self, client, span_exporter) -> None:
        trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
        parent_id = "00f067aa0ba902b7"

        await client.get("/dice", headers={"traceparent": f"00-{trace_id}-{parent_id}-01"})

        (roll,) = spans_named(span_exporter, "roll")
        (server,) = server_spans(span_exporter)
        assert format(roll.context.trace_id, "032x") == trace_id
        assert format(server.parent.span_id, "016x") == parent_id
