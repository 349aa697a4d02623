"""
MCP File Search - MCP server exposing a file keyword search tool.

The Model Context Protocol (MCP) enables AI assistants to interact with
external tools and data sources through a standardized interface. Tools
are served over stdio or over Streamable HTTP.
"""

from .protocol import (
    MCPMessage,
    MCPRequest,
    MCPResponse,
    MCPError,
    MCPErrorCode,
    ToolDefinitionError,
    ToolDescriptor,
    ToolResult,
)
from .server import MCPServer, ServerConfig, create_server
from .tools import (
    BaseTool,
    DuplicateToolError,
    FileSearchTool,
    ToolError,
    ToolInputError,
    ToolIOError,
    ToolNotFoundError,
    ToolRegistry,
)
from .transport import (
    Transport,
    StdioTransport,
    StreamableHTTPTransport,
)
from .bridge import (
    ListenerError,
    PortInUseError,
    ServerSession,
    ServerState,
    ServingMode,
    UnsupportedModeError,
    create_http_app,
    serve,
    start_server,
    stop_server,
)

__version__ = "0.1.0"

__all__ = [
    # Protocol
    "MCPMessage",
    "MCPRequest",
    "MCPResponse",
    "MCPError",
    "MCPErrorCode",
    "ToolDefinitionError",
    "ToolDescriptor",
    "ToolResult",
    # Server
    "MCPServer",
    "ServerConfig",
    "create_server",
    # Tools
    "BaseTool",
    "DuplicateToolError",
    "FileSearchTool",
    "ToolError",
    "ToolInputError",
    "ToolIOError",
    "ToolNotFoundError",
    "ToolRegistry",
    # Transport
    "Transport",
    "StdioTransport",
    "StreamableHTTPTransport",
    # Bridge
    "ListenerError",
    "PortInUseError",
    "ServerSession",
    "ServerState",
    "ServingMode",
    "UnsupportedModeError",
    "create_http_app",
    "serve",
    "start_server",
    "stop_server",
]
