"""Tests for mcp_file_search.protocol module."""

import pytest
import json

from pydantic import Field

from mcp_file_search.protocol import (
    LATEST_PROTOCOL_VERSION,
    MCPMessage,
    MCPRequest,
    MCPResponse,
    MCPError,
    MCPErrorCode,
    ToolDefinitionError,
    ToolDescriptor,
    ToolResult,
    negotiate_version,
    parse_message,
    split_batch,
)


class TestMCPError:
    def test_create(self):
        error = MCPError(code=-32600, message="Invalid Request")
        assert error.code == -32600
        assert error.message == "Invalid Request"

    def test_from_code(self):
        error = MCPError.from_code(MCPErrorCode.PARSE_ERROR, "Parse failed")
        assert error.code == -32700
        assert error.message == "Parse failed"

    def test_to_dict(self):
        error = MCPError(code=-32600, message="Test", data={"detail": "info"})
        d = error.to_dict()
        assert d["code"] == -32600
        assert d["message"] == "Test"
        assert d["data"]["detail"] == "info"

    def test_to_dict_no_data(self):
        error = MCPError(code=-32600, message="Test")
        d = error.to_dict()
        assert "data" not in d


class TestMCPMessage:
    def test_create(self):
        msg = MCPMessage(id="test-123")
        assert msg.jsonrpc == "2.0"
        assert msg.id == "test-123"

    def test_to_json(self):
        msg = MCPMessage(id=7)
        assert json.loads(msg.to_json()) == {"jsonrpc": "2.0", "id": 7}


class TestMCPRequest:
    def test_from_dict(self):
        req = MCPRequest.from_dict({
            "jsonrpc": "2.0",
            "id": "1",
            "method": "tools/call",
            "params": {"name": "search_file"},
        })
        assert req.method == "tools/call"
        assert req.params["name"] == "search_file"
        assert req.is_notification is False

    def test_notification(self):
        req = MCPRequest.from_json('{"jsonrpc": "2.0", "method": "notifications/initialized"}')
        assert req.is_notification is True
        assert "id" not in req.to_dict()

    def test_integer_id(self):
        req = MCPRequest.from_dict({"jsonrpc": "2.0", "id": 0, "method": "ping"})
        assert req.is_notification is False
        assert req.to_dict()["id"] == 0


class TestMCPResponse:
    def test_to_dict_success(self):
        resp = MCPResponse.success("1", {"tools": []})
        d = resp.to_dict()
        assert d["result"] == {"tools": []}
        assert "error" not in d

    def test_to_dict_failure(self):
        error = MCPError(code=-32600, message="Error")
        d = MCPResponse.failure("1", error).to_dict()
        assert d["error"]["code"] == -32600
        assert "result" not in d

    def test_failure_without_id_keeps_null_id(self):
        error = MCPError.from_code(MCPErrorCode.PARSE_ERROR, "bad")
        d = MCPResponse.failure(None, error).to_dict()
        assert "id" in d
        assert d["id"] is None

    def test_from_dict_with_error(self):
        resp = MCPResponse.from_dict({
            "jsonrpc": "2.0",
            "id": "1",
            "error": {"code": -32601, "message": "nope"},
        })
        assert resp.error.code == -32601
        assert resp.error.message == "nope"


class TestToolDescriptor:
    def make(self, **overrides):
        kwargs = dict(
            name="echo",
            title="Echo",
            description="Echo the input",
            input_schema={"message": (str, Field(description="Message to echo"))},
        )
        kwargs.update(overrides)
        return ToolDescriptor(**kwargs)

    def test_create(self):
        descriptor = self.make()
        assert descriptor.name == "echo"
        assert "message" in descriptor.input_schema

    @pytest.mark.parametrize("field_name", ["name", "title", "description"])
    def test_empty_field_rejected(self, field_name):
        with pytest.raises(ToolDefinitionError):
            self.make(**{field_name: ""})

    def test_missing_name_rejected(self):
        with pytest.raises(ToolDefinitionError):
            self.make(name=None)

    def test_schema_must_be_mapping(self):
        with pytest.raises(ToolDefinitionError):
            self.make(input_schema=["message"])

    def test_immutable(self):
        descriptor = self.make()
        with pytest.raises(Exception):
            descriptor.name = "other"
        with pytest.raises(TypeError):
            descriptor.input_schema["extra"] = (int, Field())

    def test_input_model_validates(self):
        descriptor = self.make()
        params = descriptor.input_model.model_validate({"message": "hi"})
        assert params.message == "hi"

    def test_to_dict(self):
        d = self.make().to_dict()
        assert d["name"] == "echo"
        assert d["title"] == "Echo"
        assert d["inputSchema"]["type"] == "object"
        assert d["inputSchema"]["properties"]["message"]["type"] == "string"
        assert d["inputSchema"]["required"] == ["message"]

    def test_empty_schema(self):
        d = self.make(input_schema={}).to_dict()
        assert d["inputSchema"]["properties"] == {}


class TestToolResult:
    def test_from_string(self):
        result = ToolResult.from_value("hello")
        assert result.text == "hello"
        assert result.is_error is False

    def test_from_non_string_is_json(self):
        result = ToolResult.from_value({"count": 2})
        assert json.loads(result.text) == {"count": 2}

    def test_from_error(self):
        result = ToolResult.from_error("File not found: x")
        assert result.text == "Error: File not found: x"
        assert result.is_error is True

    def test_to_dict(self):
        assert ToolResult.from_value("ok").to_dict() == {
            "content": [{"type": "text", "text": "ok"}],
        }
        d = ToolResult.from_error("bad").to_dict()
        assert d["isError"] is True
        assert d["content"][0]["text"] == "Error: bad"


class TestHelpers:
    def test_parse_message_request(self):
        msg = parse_message({"jsonrpc": "2.0", "id": "1", "method": "ping"})
        assert isinstance(msg, MCPRequest)
        assert msg.method == "ping"

    def test_parse_message_response(self):
        msg = parse_message({"jsonrpc": "2.0", "id": "1", "result": {}})
        assert isinstance(msg, MCPResponse)

    def test_parse_message_from_bytes(self):
        msg = parse_message(b'{"jsonrpc": "2.0", "id": "1", "method": "test"}')
        assert isinstance(msg, MCPRequest)

    def test_parse_message_invalid_json(self):
        with pytest.raises(ValueError):
            parse_message("not valid json")

    def test_parse_message_not_object(self):
        with pytest.raises(ValueError):
            parse_message([1, 2, 3])

    def test_negotiate_version(self):
        assert negotiate_version("2024-11-05") == "2024-11-05"
        assert negotiate_version("1999-01-01") == LATEST_PROTOCOL_VERSION
        assert negotiate_version(None) == LATEST_PROTOCOL_VERSION

    def test_split_batch(self):
        assert split_batch({"a": 1}) == [{"a": 1}]
        assert split_batch([{"a": 1}, {"b": 2}]) == [{"a": 1}, {"b": 2}]
