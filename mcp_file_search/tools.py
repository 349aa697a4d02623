"""
MCP Tools implementation.

Provides the tool contract every tool satisfies, the file search tool and
the registry that binds the fixed tool set into a server.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .protocol import ToolDefinitionError, ToolDescriptor, ToolResult

if TYPE_CHECKING:
    from .server import MCPServer


logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Base exception for failures raised while running a tool."""

    def __init__(self, message: str, tool_name: Optional[str] = None):
        self.message = message
        self.tool_name = tool_name
        super().__init__(message)


class ToolInputError(ToolError):
    """Raised when tool arguments are missing or invalid."""
    pass


class ToolNotFoundError(ToolError):
    """Raised when a resource the tool needs does not exist."""
    pass


class ToolIOError(ToolError):
    """Raised when a resource exists but cannot be read."""
    pass


class DuplicateToolError(ValueError):
    """Raised when a tool name is registered twice."""
    pass


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "Invalid arguments: " + "; ".join(problems)


class BaseTool(ABC):
    """
    Base class for MCP tools.

    A tool is declared once through its ToolDescriptor. The base class
    validates raw arguments against the descriptor's schema, hands the
    validated model to ``execute`` and turns whatever happens into a
    ToolResult, so a failing tool never takes the server down with it.
    """

    def __init__(self, descriptor: ToolDescriptor):
        if not isinstance(descriptor, ToolDescriptor):
            raise ToolDefinitionError(
                f"{type(self).__name__} requires a ToolDescriptor, got {type(descriptor).__name__}"
            )
        self._descriptor = descriptor

    @property
    def descriptor(self) -> ToolDescriptor:
        return self._descriptor

    @property
    def name(self) -> str:
        """Tool name, the routing key."""
        return self._descriptor.name

    @property
    def title(self) -> str:
        return self._descriptor.title

    @property
    def description(self) -> str:
        return self._descriptor.description

    @abstractmethod
    async def execute(self, params: BaseModel) -> Any:
        """Execute the tool with already validated parameters."""
        pass

    def validate(self, arguments: Optional[Dict[str, Any]]) -> BaseModel:
        """Validate and coerce raw arguments. Raises ToolInputError."""
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolInputError("Tool arguments must be an object", tool_name=self.name)

        try:
            return self._descriptor.input_model.model_validate(arguments)
        except ValidationError as e:
            raise ToolInputError(_format_validation_error(e), tool_name=self.name) from e

    async def invoke(self, arguments: Optional[Dict[str, Any]]) -> ToolResult:
        """Validate, execute and normalize the outcome. Never raises."""
        try:
            params = self.validate(arguments)
            result = await self.execute(params)
            return ToolResult.from_value(result)
        except ToolInputError as e:
            logger.error(f"Validation error in {self.name}: {e.message}")
            return ToolResult.from_error(e.message)
        except ToolError as e:
            logger.error(f"Execution error in {self.name}: {e.message}")
            return ToolResult.from_error(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error in {self.name}")
            return ToolResult.from_error(str(e) or type(e).__name__)

    def register(self, server: "MCPServer") -> None:
        """Bind this tool's descriptor and invocation wrapper into a server."""
        server.add_tool(self._descriptor, self.invoke)

    def definition(self) -> dict:
        """Get the MCP tool definition."""
        return self._descriptor.to_dict()


def _read_text(path: Path) -> str:
    # newline="" keeps "\r" characters so line numbers follow "\n" only;
    # undecodable bytes become U+FFFD instead of failing the whole search
    with open(path, "r", encoding="utf-8", errors="replace", newline="") as f:
        return f.read()


def search_lines(content: str, keyword: str, case_sensitive: bool = False) -> List[Tuple[int, str]]:
    """Return (1-based line number, trimmed text) for lines containing keyword."""
    needle = keyword if case_sensitive else keyword.lower()
    matches = []
    for line_num, line in enumerate(content.split("\n"), 1):
        haystack = line if case_sensitive else line.lower()
        if needle in haystack:
            matches.append((line_num, line.strip()))
    return matches


def format_search_result(filepath: str, keyword: str, matches: List[Tuple[int, str]]) -> str:
    if not matches:
        return f'No matches found for keyword "{keyword}" in file: {filepath}'

    lines = [
        f'Found {len(matches)} match(es) for keyword "{keyword}" in file: {filepath}',
        "",
    ]
    lines.extend(f"Line {line_num}: {text}" for line_num, text in matches)
    return "\n".join(lines)


class FileSearchTool(BaseTool):
    """Search a file for a keyword and report matching lines."""

    def __init__(self):
        super().__init__(
            ToolDescriptor(
                name="search_file",
                title="Search File",
                description=(
                    "Search for a keyword in a specified file and return "
                    "matching lines with line numbers"
                ),
                input_schema={
                    "filepath": (str, Field(description="Path to the file to search")),
                    "keyword": (str, Field(description="Keyword to search for in the file")),
                    "caseSensitive": (
                        bool,
                        Field(
                            default=False,
                            description="Whether the search should be case-sensitive (default: false)",
                        ),
                    ),
                },
            )
        )

    async def execute(self, params: BaseModel) -> str:
        filepath = params.filepath
        keyword = params.keyword
        case_sensitive = params.caseSensitive

        if not filepath or not isinstance(filepath, str):
            raise ToolInputError("filepath is required and must be a string", tool_name=self.name)

        if not keyword or not isinstance(keyword, str):
            raise ToolInputError("keyword is required and must be a string", tool_name=self.name)

        path = Path(filepath)
        if not path.exists():
            raise ToolNotFoundError(f"File not found: {filepath}", tool_name=self.name)

        try:
            content = await asyncio.to_thread(_read_text, path)
        except OSError as e:
            raise ToolIOError(f"Failed to read file: {e}", tool_name=self.name) from e

        matches = search_lines(content, keyword, case_sensitive)
        return format_search_result(filepath, keyword, matches)


@dataclass
class ToolRegistry:
    """Fixed, ordered set of tools registered into a server at startup."""
    tools: List[BaseTool] = field(default_factory=list)

    def __post_init__(self):
        initial, self.tools = list(self.tools), []
        for tool in initial:
            self.add(tool)

    def add(self, tool: BaseTool) -> None:
        """Append a tool. Names must be unique."""
        if self.get(tool.name) is not None:
            raise DuplicateToolError(f"Tool already registered: {tool.name}")
        self.tools.append(tool)

    def get(self, name: str) -> Optional[BaseTool]:
        """Get a tool by name."""
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    def register_all(self, server: "MCPServer") -> None:
        """Register every tool with the server, in construction order."""
        for tool in self.tools:
            tool.register(server)
        logger.info(f"All tools registered successfully: {', '.join(self.names())}")

    def __len__(self) -> int:
        return len(self.tools)

    def __iter__(self) -> Iterator[BaseTool]:
        return iter(self.tools)

    @classmethod
    def create_default_registry(cls) -> "ToolRegistry":
        """Create a registry with the default tools."""
        return cls(tools=[FileSearchTool()])
