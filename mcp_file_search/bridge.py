"""
Transport bridge.

Stands up exactly one serving mode per session, stdio or HTTP, wires it to
the protocol runtime and tears it down again. A session is an explicit
handle: ``start_server`` returns it and ``stop_server`` takes it.
"""

import asyncio
import errno
import logging
import signal
import socket
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .server import MCPServer, ServerConfig, create_server
from .tools import ToolRegistry
from .transport import StdioTransport, StreamableHTTPTransport


logger = logging.getLogger(__name__)

LIVENESS_TEXT = "MCP server is running"
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGUSR2")
MCP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class BridgeError(Exception):
    """Infrastructure failure that prevents serving."""
    pass


class UnsupportedModeError(BridgeError):
    """Raised for a transport mode other than stdio or http."""
    pass


class ListenerError(BridgeError):
    """Raised when the HTTP listener cannot be started."""
    pass


class PortInUseError(ListenerError):
    """Raised when the configured port is already bound."""
    pass


class ServingMode(Enum):
    STDIO = "stdio"
    HTTP = "http"

    @classmethod
    def parse(cls, value: Union[str, "ServingMode"]) -> "ServingMode":
        """Case-insensitive lookup."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedModeError(f"Unsupported mode: {value}")


class ServerState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class _Listener(uvicorn.Server):
    """uvicorn server that leaves signal handling to the bridge."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self):
        yield


@dataclass
class ServerSession:
    """Handle on one serving session."""
    mode: ServingMode
    config: ServerConfig
    server: MCPServer
    state: ServerState = ServerState.IDLE
    transport: Optional[Union[StdioTransport, StreamableHTTPTransport]] = None
    listener: Optional[uvicorn.Server] = None
    port: Optional[int] = None
    task: Optional[asyncio.Task] = None
    error: Optional[BaseException] = None
    _shutdown: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def url(self) -> Optional[str]:
        if self.mode is not ServingMode.HTTP or self.port is None:
            return None
        return f"http://localhost:{self.port}{self.config.mcp_path}"

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def wait(self) -> None:
        """Block until the session ends on its own or shutdown is requested."""
        shutdown = asyncio.ensure_future(self._shutdown.wait())
        waiters = {shutdown}
        if self.task is not None:
            waiters.add(self.task)
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown.cancel()


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listening socket up front so bind failures surface before serving."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise PortInUseError(
                f"Port {port} is already in use. Please kill existing processes or use a different port."
            ) from e
        raise ListenerError(f"Failed to bind {host}:{port}: {e}") from e
    return sock


def create_http_app(transport: StreamableHTTPTransport, mcp_path: str = "/mcp") -> FastAPI:
    """
    Build the HTTP surface: every method on ``mcp_path`` is relayed to the
    shared transport, ``GET /`` answers a fixed liveness text.

    A relay failure is logged and answered with a 500, and the listener
    keeps serving. Once a streamed response has started its status line
    is already on the wire, so a failure mid-stream only ends the stream.
    """
    app = FastAPI(title="MCP File Search Server")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return LIVENESS_TEXT

    @app.api_route(mcp_path, methods=MCP_METHODS)
    async def mcp_endpoint(request: Request):
        try:
            return await transport.handle_request(request)
        except Exception:
            logger.exception("Transport error")
            return JSONResponse({"error": "Internal Server Error"}, status_code=500)

    return app


async def _wait_until_started(listener: uvicorn.Server, task: asyncio.Task) -> None:
    while not listener.started:
        if task.done():
            exc = None if task.cancelled() else task.exception()
            raise ListenerError(f"HTTP listener failed to start: {exc or 'exited during startup'}")
        await asyncio.sleep(0.01)


async def start_server(
    config: ServerConfig,
    previous: Optional[ServerSession] = None,
    registry: Optional[ToolRegistry] = None,
    stdio_streams: Optional[tuple] = None,
) -> ServerSession:
    """
    Start one serving session.

    Args:
        config: Server configuration; ``transport_mode`` selects the mode
        previous: A session to stop first, closing its listener
        registry: Tools to serve; the default tool set when omitted
        stdio_streams: (input, output) streams overriding stdin/stdout

    Raises:
        UnsupportedModeError: before anything is created
        PortInUseError, ListenerError: when the HTTP listener cannot start
    """
    if previous is not None:
        await stop_server(previous)

    mode = ServingMode.parse(config.transport_mode)

    server = create_server(config, registry)
    session = ServerSession(mode=mode, config=config, server=server)
    session.state = ServerState.STARTING

    if mode is ServingMode.STDIO:
        input_stream, output_stream = stdio_streams or (None, None)
        transport = StdioTransport(input_stream=input_stream, output_stream=output_stream)
        session.transport = transport
        session.task = asyncio.create_task(server.run(transport))
        logger.info("MCP Server running in STDIO mode")
    else:
        sock = bind_socket(config.host, config.port)
        session.port = sock.getsockname()[1]

        try:
            transport = StreamableHTTPTransport(json_response=config.json_response)
            server.connect(transport)
            session.transport = transport

            app = create_http_app(transport, config.mcp_path)
            listener = _Listener(
                uvicorn.Config(
                    app,
                    log_config=None,
                    log_level=config.log_level.lower(),
                    lifespan="off",
                )
            )
            session.listener = listener
            session.task = asyncio.create_task(listener.serve(sockets=[sock]))
            await _wait_until_started(listener, session.task)
        except BaseException:
            if session.task is not None and not session.task.done():
                session.task.cancel()
            sock.close()
            session.state = ServerState.STOPPED
            raise
        logger.info(f"MCP Server running in HTTP mode on {session.url}")

    session.state = ServerState.RUNNING
    return session


async def stop_server(session: ServerSession) -> None:
    """Close the session's listener and transport. Idempotent."""
    if session.state in (ServerState.SHUTTING_DOWN, ServerState.STOPPED):
        return

    session.state = ServerState.SHUTTING_DOWN
    logger.info("Shutting down gracefully...")

    session.server.stop()
    if session.listener is not None:
        session.listener.should_exit = True

    task = session.task
    if task is not None:
        if session.mode is ServingMode.STDIO and not task.done():
            # the stdio loop is parked on stdin
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            session.error = e
            logger.exception("Server task failed")

    if session.transport is not None:
        await session.transport.close()

    if session.listener is not None:
        logger.info("HTTP server closed")

    session.state = ServerState.STOPPED


def install_signal_handlers(session: ServerSession) -> List[signal.Signals]:
    """Route SIGINT, SIGTERM and SIGUSR2 to one shutdown request."""
    loop = asyncio.get_running_loop()
    installed = []

    def on_signal(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}")
        session.request_shutdown()

    for name in SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except NotImplementedError:
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(on_signal, signal.Signals(signum)))
        installed.append(sig)

    return installed


def remove_signal_handlers(signals: List[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in signals:
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            signal.signal(sig, signal.SIG_DFL)


async def serve(
    config: ServerConfig,
    registry: Optional[ToolRegistry] = None,
    on_started: Optional[Callable[[ServerSession], None]] = None,
) -> int:
    """Run one session until EOF, listener exit or a shutdown signal. Returns the exit status."""
    session = await start_server(config, registry=registry)
    signals = install_signal_handlers(session)
    try:
        if on_started is not None:
            on_started(session)
        await session.wait()
    finally:
        await stop_server(session)
        remove_signal_handlers(signals)

    return 1 if session.error is not None else 0
