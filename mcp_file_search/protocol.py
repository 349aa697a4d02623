"""
MCP Protocol definitions.

Implements the Model Context Protocol message types, the tool descriptor
every tool is declared with, and the text envelope tool calls answer with.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel, create_model


LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = (
    "2024-11-05",
    "2025-03-26",
    "2025-06-18",
)

RequestId = Union[str, int]

# (annotation, pydantic FieldInfo), e.g. (str, Field(description="..."))
FieldSpec = Tuple[Any, Any]


class MCPErrorCode(Enum):
    """Standard JSON-RPC error codes used by MCP."""
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class ToolDefinitionError(ValueError):
    """Raised when a tool descriptor is structurally invalid."""
    pass


@dataclass
class MCPError:
    """MCP Error object."""
    code: int
    message: str
    data: Optional[Any] = None

    @classmethod
    def from_code(cls, code: MCPErrorCode, message: str, data: Any = None) -> "MCPError":
        return cls(code=code.value, message=message, data=data)

    @classmethod
    def from_dict(cls, data: dict) -> "MCPError":
        return cls(
            code=data.get("code", MCPErrorCode.INTERNAL_ERROR.value),
            message=data.get("message", ""),
            data=data.get("data"),
        )

    def to_dict(self) -> dict:
        result = {"code": self.code, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result


@dataclass
class MCPMessage:
    """Base MCP message."""
    jsonrpc: str = "2.0"
    id: Optional[RequestId] = None

    def to_dict(self) -> dict:
        result = {"jsonrpc": self.jsonrpc}
        if self.id is not None:
            result["id"] = self.id
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "MCPMessage":
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            id=data.get("id"),
        )


@dataclass
class MCPRequest(MCPMessage):
    """MCP Request message. Without an id it is a notification."""
    method: str = ""
    params: Optional[Dict[str, Any]] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["method"] = self.method
        if self.params is not None:
            result["params"] = self.params
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "MCPRequest":
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            id=data.get("id"),
            method=data.get("method", ""),
            params=data.get("params"),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "MCPRequest":
        return cls.from_dict(json.loads(json_str))


@dataclass
class MCPResponse(MCPMessage):
    """MCP Response message."""
    result: Optional[Any] = None
    error: Optional[MCPError] = None

    def to_dict(self) -> dict:
        result = super().to_dict()
        if self.error is not None:
            # JSON-RPC requires the id member on errors, even when unknown
            result["id"] = self.id
            result["error"] = self.error.to_dict()
        else:
            result["result"] = self.result
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "MCPResponse":
        error = data.get("error")
        return cls(
            jsonrpc=data.get("jsonrpc", "2.0"),
            id=data.get("id"),
            result=data.get("result"),
            error=MCPError.from_dict(error) if isinstance(error, dict) else None,
        )

    @classmethod
    def success(cls, id: Optional[RequestId], result: Any) -> "MCPResponse":
        return cls(id=id, result=result)

    @classmethod
    def failure(cls, id: Optional[RequestId], error: MCPError) -> "MCPResponse":
        return cls(id=id, error=error)


def _model_name(tool_name: str) -> str:
    parts = [p for p in re.split(r"[^0-9A-Za-z]+", tool_name) if p]
    return "".join(p[:1].upper() + p[1:] for p in parts) + "Input"


@dataclass(frozen=True)
class ToolDescriptor:
    """
    Immutable declaration of a tool: routing name, display title,
    description and input schema.

    ``input_schema`` maps each parameter name to a pydantic field
    specification ``(annotation, Field(...))``. A pydantic model is built
    from it once, at construction, and used both for validation and for
    the JSON Schema advertised in ``tools/list``.
    """
    name: str
    title: str
    description: str
    input_schema: Mapping[str, FieldSpec] = field(default_factory=dict)
    input_model: Type[BaseModel] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        for attr in ("name", "title", "description"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not value.strip():
                raise ToolDefinitionError(
                    f"Tool descriptor requires a non-empty '{attr}'"
                )

        if not isinstance(self.input_schema, Mapping):
            raise ToolDefinitionError(
                f"Tool '{self.name}': input_schema must be a mapping"
            )

        try:
            model = create_model(_model_name(self.name), **dict(self.input_schema))
        except (TypeError, ValueError, NameError) as e:
            raise ToolDefinitionError(
                f"Tool '{self.name}': invalid input_schema: {e}"
            ) from e

        object.__setattr__(self, "input_schema", MappingProxyType(dict(self.input_schema)))
        object.__setattr__(self, "input_model", model)

    def input_json_schema(self) -> dict:
        """JSON Schema of the tool input, as published to clients."""
        schema = self.input_model.model_json_schema()
        schema.setdefault("properties", {})
        schema.pop("title", None)
        return schema

    def to_dict(self) -> dict:
        """Convert to MCP tool definition format."""
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "inputSchema": self.input_json_schema(),
        }


@dataclass
class ToolResult:
    """Normalized outcome of one tool call: a single text block."""
    text: str
    is_error: bool = False

    @classmethod
    def from_value(cls, value: Any) -> "ToolResult":
        if isinstance(value, str):
            return cls(text=value)
        if isinstance(value, BaseModel):
            return cls(text=value.model_dump_json())
        return cls(text=json.dumps(value, default=str))

    @classmethod
    def from_error(cls, message: str) -> "ToolResult":
        return cls(text=f"Error: {message}", is_error=True)

    def to_dict(self) -> dict:
        """Convert to an MCP CallToolResult."""
        result: Dict[str, Any] = {
            "content": [{"type": "text", "text": self.text}],
        }
        if self.is_error:
            result["isError"] = True
        return result


def parse_message(data: Union[str, bytes, dict]) -> MCPMessage:
    """Parse a raw message into an MCP message object."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ValueError("Message must be a JSON object")

    if "method" in data:
        return MCPRequest.from_dict(data)
    elif "result" in data or "error" in data:
        return MCPResponse.from_dict(data)
    else:
        return MCPMessage.from_dict(data)


def negotiate_version(requested: Optional[str]) -> str:
    """Echo the client's protocol version when supported, else the latest."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def split_batch(payload: Any) -> List[Any]:
    """Normalize a decoded body to a list of messages."""
    if isinstance(payload, list):
        return payload
    return [payload]
