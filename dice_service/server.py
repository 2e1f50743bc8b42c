"""
Server lifecycle: CREATED → SERVING → DRAINING → STOPPED.

The lifecycle task races two events and records exactly one winner:
- an interrupt (SIGINT/SIGTERM, or ``request_shutdown()``)
- the uvicorn serve task ending on its own (a server fault)

Whichever wins, shutdown runs in a fixed order: stop accepting, drain
in-flight requests (bounded by ``shutdown_timeout``), then shut the
telemetry bundle down, so nothing emitted during the drain is lost.
"""
import asyncio
import contextlib
import logging
import signal
import socket
from enum import Enum
from typing import Iterator, Optional

import uvicorn
from fastapi import FastAPI

from .api.main import create_app
from .api.timeouts import INSTRUMENTATION_NAME as TIMEOUT_INSTRUMENTATION_NAME, TimeoutMiddleware
from .config import Settings
from .observability.telemetry import Telemetry, setup_telemetry

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LifecycleState(str, Enum):
    CREATED = "created"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class StopReason(str, Enum):
    INTERRUPT = "interrupt"
    SERVER_FAULT = "server_fault"


class ServerBindError(Exception):
    """Raised when the listening socket cannot be bound."""

    pass


class ServerError(Exception):
    """
    Raised when the accept loop stopped without being asked to.

    ``telemetry_error`` holds the error from shutting telemetry down
    afterwards, if that failed too.
    """

    def __init__(self, message: str, telemetry_error: Optional[BaseException] = None) -> None:
        if telemetry_error is not None:
            message = f"{message} (telemetry shutdown also failed: {telemetry_error})"
        super().__init__(message)
        self.telemetry_error = telemetry_error


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to ServerLifecycle."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class ServerLifecycle:
    """
    Owns the listening socket and the uvicorn server of one process run.

    Usage:
        lifecycle = ServerLifecycle(app, settings, telemetry)
        await lifecycle.run()      # returns after a clean interrupt-driven stop

    The telemetry bundle is shut down exactly once, after the server has
    drained, on every path out of ``wait()``.
    """

    def __init__(
        self,
        app: FastAPI,
        settings: Settings,
        telemetry: Telemetry,
        handle_signals: bool = True,
    ) -> None:
        self.app = app
        self.settings = settings
        self.telemetry = telemetry
        self.handle_signals = handle_signals
        self.state = LifecycleState.CREATED
        self.stop_reason: Optional[StopReason] = None

        self._interrupted = asyncio.Event()
        self._sock: Optional[socket.socket] = None
        self._server: Optional[_Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._signals_installed = False

    @property
    def port(self) -> Optional[int]:
        """Port actually bound (useful when configured with port 0)."""
        if self._sock is None:
            return None
        return self._sock.getsockname()[1]

    def request_shutdown(self) -> None:
        """Ask the server to drain and stop; safe to call more than once."""
        self._interrupted.set()

    async def run(self) -> None:
        await self.start()
        await self.wait()

    async def start(self) -> None:
        """
        Bind the socket and start serving in the background.

        Raises:
            ServerBindError: if the address cannot be bound (telemetry is
                shut down before raising)
        """
        if self.state is not LifecycleState.CREATED:
            raise RuntimeError(f"Cannot start server in state {self.state.value}")

        try:
            self._sock = self._bind()
        except ServerBindError:
            self.state = LifecycleState.STOPPED
            await self._shutdown_telemetry()
            raise

        config = uvicorn.Config(
            TimeoutMiddleware(
                self.app,
                read_timeout=self.settings.read_timeout,
                write_timeout=self.settings.write_timeout,
                tracer=self.telemetry.get_tracer(TIMEOUT_INSTRUMENTATION_NAME),
            ),
            timeout_graceful_shutdown=self.settings.shutdown_timeout,
            log_config=None,
        )
        self._server = _Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._sock]))
        self._install_signal_handlers()
        self.state = LifecycleState.SERVING

        # uvicorn only exposes a flag for readiness
        while not self._server.started and not self._serve_task.done():
            await asyncio.sleep(0.01)

        if self._serve_task.done():
            logger.error("Server exited before accepting connections")
            return
        logger.info(f"Serving on {self.settings.host}:{self.port}")

    async def wait(self) -> None:
        """
        Block until interrupted or until the server fails, then drain and stop.

        Raises:
            ServerError: if the server stopped on its own
            TelemetryShutdownError: if a provider failed to shut down after
                an otherwise clean stop
        """
        if self._serve_task is None:
            raise RuntimeError("Server was not started")

        interrupted = asyncio.create_task(self._interrupted.wait())
        try:
            done, _ = await asyncio.wait(
                {self._serve_task, interrupted}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            interrupted.cancel()
            # A second Ctrl+C now gets the default behaviour
            self._remove_signal_handlers()

        fault: Optional[BaseException] = None
        telemetry_error: Optional[BaseException] = None
        if self._serve_task in done:
            self.stop_reason = StopReason.SERVER_FAULT
            fault = self._task_error() or ServerError("Server stopped unexpectedly")
            logger.error(f"Server stopped unexpectedly: {fault}")
        else:
            self.stop_reason = StopReason.INTERRUPT
            logger.info("Shutdown requested, draining in-flight requests")

        self.state = LifecycleState.DRAINING
        if not self._serve_task.done():
            self._server.should_exit = True
            try:
                await self._serve_task
            except Exception as e:
                logger.error(f"Server failed while draining: {e}")
                fault = e
        if self._sock is not None:
            self._sock.close()

        try:
            if fault is None:
                await self._shutdown_telemetry()
                logger.info("Server stopped")
                return
            try:
                await self._shutdown_telemetry()
            except Exception as e:
                logger.error(f"Telemetry shutdown failed after server fault: {e}")
                telemetry_error = e
        finally:
            self.state = LifecycleState.STOPPED

        if isinstance(fault, ServerError):
            message = str(fault)
        else:
            message = f"Server failed: {fault}"
        raise ServerError(message, telemetry_error=telemetry_error) from fault

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.settings.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.settings.host, self.settings.port))
        except OSError as e:
            sock.close()
            raise ServerBindError(f"Cannot listen on {self.settings.bind_address}: {e}") from e
        sock.set_inheritable(True)
        return sock

    def _task_error(self) -> Optional[BaseException]:
        if self._serve_task.cancelled():
            return ServerError("Server task was cancelled")
        return self._serve_task.exception()

    async def _shutdown_telemetry(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.telemetry.shutdown)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}")
        self.request_shutdown()

    def _install_signal_handlers(self) -> None:
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows: no loop-level signal support
                signal.signal(sig, lambda s, _frame: loop.call_soon_threadsafe(self._on_signal, signal.Signals(s)))
        self._signals_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.default_int_handler if sig == signal.SIGINT else signal.SIG_DFL)
        self._signals_installed = False


async def run_service(settings: Settings) -> None:
    """
    Set up telemetry, build the app and serve until interrupted.

    Raises:
        TelemetrySetupError: telemetry could not be initialized; nothing served
        ServerBindError: the listening address is unavailable
        ServerError: the server stopped on its own
        TelemetryShutdownError: providers failed to shut down cleanly
    """
    telemetry = setup_telemetry(settings)
    try:
        app = create_app(telemetry)
    except Exception:
        telemetry.shutdown()
        raise
    lifecycle = ServerLifecycle(app, settings, telemetry)
    await lifecycle.run()
