"""
Per-request read/write deadlines.

uvicorn has no equivalent of a read or write timeout on a request, so the
lifecycle manager wraps the application in this middleware:

- read: the whole request (headers already parsed, body until the last
  chunk) must arrive within ``read_timeout``, otherwise 408.
- write: the application must finish sending its response within
  ``write_timeout``, otherwise 503 if nothing was sent yet, or the
  connection is dropped mid-response.

The middleware sits outside the FastAPI instrumentation, so a request it
answers itself (408) never reaches the server span there. With a tracer
it records a server span of its own for those requests.
"""
import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from opentelemetry import propagate, trace
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "dice_service.timeouts"


class TimeoutMiddleware:
    """Pure ASGI middleware enforcing per-request read and write deadlines."""

    def __init__(
        self,
        app: ASGIApp,
        read_timeout: float,
        write_timeout: float,
        tracer: Optional[trace.Tracer] = None,
    ) -> None:
        self.app = app
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.tracer = tracer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            messages = await asyncio.wait_for(_read_request(receive), self.read_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request read timed out after {self.read_timeout}s: {scope.get('path')}")
            self._record_rejection(scope, 408)
            await _send_plain(send, 408, b"Request Timeout")
            return

        pending: Deque[Message] = deque(messages)

        async def replay_receive() -> Message:
            if pending:
                return pending.popleft()
            return await receive()

        response_started = False

        async def tracked_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, replay_receive, tracked_send), self.write_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Response write timed out after {self.write_timeout}s: {scope.get('path')}")
            if not response_started:
                await _send_plain(send, 503, b"Service Unavailable")

    def _record_rejection(self, scope: Scope, status: int) -> None:
        if self.tracer is None:
            return
        method = scope.get("method", "HTTP")
        span = self.tracer.start_span(
            method,
            context=propagate.extract(_header_carrier(scope)),
            kind=trace.SpanKind.SERVER,
            attributes={
                "http.request.method": method,
                "url.path": scope.get("path", ""),
                "http.response.status_code": status,
            },
        )
        span.end()


async def _read_request(receive: Receive) -> List[Message]:
    """Drain the request body, returning the messages for replay."""
    messages: List[Message] = []
    while True:
        message = await receive()
        messages.append(message)
        if message["type"] == "http.disconnect":
            return messages
        if message["type"] == "http.request" and not message.get("more_body", False):
            return messages


def _header_carrier(scope: Scope) -> Dict[str, str]:
    return {
        key.decode("latin-1"): value.decode("latin-1")
        for key, value in scope.get("headers", [])
    }


async def _send_plain(send: Send, status: int, body: bytes) -> None:
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [
            (b"content-type", b"text/plain; charset=utf-8"),
            (b"content-length", str(len(body)).encode()),
            (b"connection", b"close"),
        ],
    })
    await send({"type": "http.response.body", "body": body})
