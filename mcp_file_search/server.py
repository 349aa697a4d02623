"""
MCP Server implementation.

Protocol runtime: the JSON-RPC method table, the tool table tools are
registered into, and the stdio main loop.
"""

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

from .protocol import (
    MCPError,
    MCPErrorCode,
    MCPRequest,
    MCPResponse,
    ToolDescriptor,
    ToolResult,
    negotiate_version,
    parse_message,
)
from .tools import DuplicateToolError, ToolRegistry
from .transport import StdioTransport, Transport

if TYPE_CHECKING:
    from .transport import StreamableHTTPTransport


logger = logging.getLogger(__name__)

ToolHandler = Callable[[Optional[Dict[str, Any]]], Awaitable[ToolResult]]


@dataclass
class ServerConfig:
    """Configuration for MCP server."""
    name: str = "mcp-file-search"
    version: str = "0.1.0"
    transport_mode: str = "http"
    host: str = "0.0.0.0"
    port: int = 5001
    mcp_path: str = "/mcp"
    json_response: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ServerConfig":
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls()

        port_value = env.get("PORT", str(defaults.port))
        try:
            port = int(port_value)
        except ValueError:
            raise ValueError(f"Invalid PORT: {port_value!r}")
        if not 0 <= port <= 65535:
            raise ValueError(f"Invalid PORT: {port_value!r}")

        return cls(
            transport_mode=env.get("TRANSPORT_MODE", defaults.transport_mode),
            host=env.get("HOST", defaults.host),
            port=port,
            json_response=env.get("MCP_JSON_RESPONSE", "").lower() in ("1", "true", "yes"),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "transport_mode": self.transport_mode,
            "host": self.host,
            "port": self.port,
        }


@dataclass
class RegisteredTool:
    """Entry of the server's tool table."""
    descriptor: ToolDescriptor
    handler: ToolHandler


class MCPServer:
    """
    MCP Server that handles tool registration, request processing, and lifecycle.
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self._tools: Dict[str, RegisteredTool] = {}
        self._transport: Optional[Union[Transport, "StreamableHTTPTransport"]] = None
        self._running = False
        self._handlers: Dict[str, Callable] = {}

        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        """Register built-in MCP method handlers."""
        self._handlers["initialize"] = self._handle_initialize
        self._handlers["notifications/initialized"] = self._handle_initialized
        self._handlers["tools/list"] = self._handle_list_tools
        self._handlers["tools/call"] = self._handle_call_tool
        self._handlers["shutdown"] = self._handle_shutdown
        self._handlers["ping"] = self._handle_ping

    @property
    def running(self) -> bool:
        return self._running

    def add_tool(self, descriptor: ToolDescriptor, handler: ToolHandler) -> None:
        """Bind a tool descriptor and its invocation function."""
        if descriptor.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {descriptor.name}")
        self._tools[descriptor.name] = RegisteredTool(descriptor=descriptor, handler=handler)
        logger.debug(f"Registered tool: {descriptor.name}")

    def tool_names(self) -> List[str]:
        return list(self._tools)

    def register_handler(self, method: str, handler: Callable) -> None:
        """Register a custom method handler."""
        self._handlers[method] = handler

    async def _handle_initialize(self, params: Optional[dict]) -> dict:
        """Handle initialize request."""
        requested = (params or {}).get("protocolVersion")
        return {
            "protocolVersion": negotiate_version(requested),
            "capabilities": {
                "tools": {"listChanged": False},
            },
            "serverInfo": {
                "name": self.config.name,
                "version": self.config.version,
            },
        }

    async def _handle_initialized(self, params: Optional[dict]) -> dict:
        """Handle initialized notification."""
        logger.info("Client initialized")
        return {}

    async def _handle_list_tools(self, params: Optional[dict]) -> dict:
        """Handle tools/list request."""
        return {
            "tools": [entry.descriptor.to_dict() for entry in self._tools.values()],
        }

    async def _handle_call_tool(self, params: Optional[dict]) -> dict:
        """Handle tools/call request."""
        if not params:
            return ToolResult.from_error("Missing parameters").to_dict()

        name = params.get("name")
        arguments = params.get("arguments")

        if not name:
            return ToolResult.from_error("Missing tool name").to_dict()

        entry = self._tools.get(name)
        if entry is None:
            return ToolResult.from_error(f"Tool not found: {name}").to_dict()

        result = await entry.handler(arguments)
        return result.to_dict()

    async def _handle_shutdown(self, params: Optional[dict]) -> dict:
        """Handle shutdown request."""
        logger.info("Shutdown requested")
        self._running = False
        return {}

    async def _handle_ping(self, params: Optional[dict]) -> dict:
        """Handle ping request."""
        return {}

    async def process_request(self, request: MCPRequest) -> MCPResponse:
        """Process a single MCP request."""
        handler = self._handlers.get(request.method)

        if handler is None:
            error = MCPError.from_code(
                MCPErrorCode.METHOD_NOT_FOUND,
                f"Unknown method: {request.method}",
            )
            return MCPResponse.failure(request.id, error)

        if request.params is not None and not isinstance(request.params, dict):
            error = MCPError.from_code(
                MCPErrorCode.INVALID_PARAMS,
                "params must be an object",
            )
            return MCPResponse.failure(request.id, error)

        try:
            result = await handler(request.params)
            return MCPResponse.success(request.id, result)
        except Exception as e:
            logger.exception(f"Error processing request: {e}")
            error = MCPError.from_code(
                MCPErrorCode.INTERNAL_ERROR,
                str(e),
            )
            return MCPResponse.failure(request.id, error)

    async def handle_message(self, data: Any) -> Optional[dict]:
        """Handle an incoming message. Notifications and responses yield None."""
        if not isinstance(data, dict):
            error = MCPError.from_code(
                MCPErrorCode.INVALID_REQUEST,
                "Message must be a JSON object",
            )
            return MCPResponse.failure(None, error).to_dict()

        try:
            message = parse_message(data)

            if isinstance(message, MCPRequest):
                response = await self.process_request(message)
                if message.is_notification:
                    return None
                return response.to_dict()

            return None
        except Exception as e:
            logger.exception(f"Error handling message: {e}")
            error = MCPError.from_code(
                MCPErrorCode.INTERNAL_ERROR,
                str(e),
            )
            return MCPResponse.failure(data.get("id"), error).to_dict()

    def connect(self, transport: "StreamableHTTPTransport") -> None:
        """Attach a push-style transport; it forwards messages to this server."""
        transport.attach(self.handle_message)
        self._transport = transport
        self._running = True
        logger.info(f"MCP Server {self.config.name} v{self.config.version} connected")

    async def run(self, transport: Optional[Transport] = None) -> None:
        """Run the server main loop over a pull-style transport."""
        self._transport = transport or StdioTransport()
        self._running = True

        logger.info(f"MCP Server {self.config.name} v{self.config.version} starting")

        try:
            async with self._transport:
                while self._running:
                    try:
                        message = await self._transport.receive()

                        if message is None:
                            logger.info("EOF received, shutting down")
                            break

                        response = await self.handle_message(message)

                        if response is not None:
                            await self._transport.send(response)
                    except ValueError as e:
                        logger.error(f"Parse error: {e}")
                        error_response = MCPResponse.failure(
                            None,
                            MCPError.from_code(MCPErrorCode.PARSE_ERROR, str(e)),
                        )
                        await self._transport.send(error_response.to_dict())
                    except Exception as e:
                        logger.exception(f"Error in main loop: {e}")
        finally:
            self._running = False
            logger.info("Server stopped")

    def stop(self) -> None:
        """Signal the server to stop."""
        self._running = False


def create_server(
    config: Optional[ServerConfig] = None,
    registry: Optional[ToolRegistry] = None,
) -> MCPServer:
    """
    Create an MCP server with every tool of the registry registered.

    Args:
        config: Server configuration
        registry: Tools to register; the default tool set when omitted

    Returns:
        Configured MCPServer instance
    """
    server = MCPServer(config or ServerConfig())
    if registry is None:
        registry = ToolRegistry.create_default_registry()
    registry.register_all(server)
    return server
