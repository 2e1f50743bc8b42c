"""
HTTP instrumentation for the FastAPI app.

Two layers, nested:
1. Server layer: FastAPIInstrumentor wraps the whole ASGI app, so every
   request gets a server span, including requests no route matched (404).
2. Route layer: InstrumentedRoute wraps each route handler in a child span
   named after the route pattern and tagged with ``http.route``.

Span tree for ``GET /dice/Alice``:

    GET /dice/{player}          (server, FastAPIInstrumentor)
    └── /dice/{player}          (route, InstrumentedRoute)
        └── roll                (handler)
"""

from typing import Any, Callable, Coroutine

from fastapi import FastAPI, Request, Response
from fastapi.routing import APIRoute
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dice_service.observability.telemetry import Telemetry

INSTRUMENTATION_NAME = "dice_service.http"
HTTP_ROUTE = "http.route"
EXCLUDED_URLS = "/metrics"


class InstrumentedRoute(APIRoute):
    """APIRoute that runs its handler inside a span named after the route pattern."""

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        handler = super().get_route_handler()
        pattern = self.path_format

        async def instrumented_handler(request: Request) -> Response:
            telemetry: Telemetry = request.app.state.telemetry
            tracer = telemetry.get_tracer(INSTRUMENTATION_NAME)

            # Tag the enclosing server span too, even when the router didn't
            server_span = trace.get_current_span()
            if server_span.is_recording():
                server_span.set_attribute(HTTP_ROUTE, pattern)

            with tracer.start_as_current_span(pattern, attributes={HTTP_ROUTE: pattern}):
                return await handler(request)

        return instrumented_handler


def instrument_app(app: FastAPI, telemetry: Telemetry) -> FastAPI:
    """
    Add the server-level span layer backed by ``telemetry``'s providers.

    Route-level spans come from registering routes with ``InstrumentedRoute``.
    """
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=telemetry.tracer_provider,
        meter_provider=telemetry.meter_provider,
        excluded_urls=EXCLUDED_URLS,
    )
    return app
