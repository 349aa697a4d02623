"""
MCP Transport layer implementations.

Provides transport mechanisms for MCP communication:
- StdioTransport: newline-delimited JSON over stdin/stdout
- StreamableHTTPTransport: one shared HTTP endpoint answering with JSON
  or a Server-Sent-Events stream
"""

import sys
import json
import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .protocol import MCPError, MCPErrorCode, MCPResponse, split_batch


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[Optional[dict]]]


class Transport(ABC):
    """Abstract base class for pull-style MCP transports."""

    @abstractmethod
    async def send(self, message: dict) -> None:
        """Send a message."""
        pass

    @abstractmethod
    async def receive(self) -> Optional[dict]:
        """Receive a message. Returns None on EOF/close."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the transport."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class StdioTransport(Transport):
    """
    Transport using stdin/stdout for communication.

    Each message is one line of JSON. Lines are read on a daemon thread
    and handed to the event loop through a queue, so a blocked read on
    stdin never stalls the loop or keeps the process alive at exit.
    """

    def __init__(
        self,
        input_stream=None,
        output_stream=None,
    ):
        self.input = input_stream or sys.stdin
        self.output = output_stream or sys.stdout
        self._closed = False
        self._eof = False
        self._queue: Optional[asyncio.Queue] = None

    def _start_reader(self) -> None:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue

        # read raw bytes where available so a bad byte spoils one line, not the stream
        raw = getattr(self.input, "buffer", None)

        def lines():
            if raw is None:
                yield from iter(self.input.readline, "")
                return
            for chunk in iter(raw.readline, b""):
                yield chunk.decode("utf-8", errors="replace")

        def pump():
            try:
                for line in lines():
                    loop.call_soon_threadsafe(queue.put_nowait, line)
                loop.call_soon_threadsafe(queue.put_nowait, None)
            except RuntimeError:
                # event loop already closed
                return
            except (OSError, ValueError) as e:
                logger.warning(f"stdin reader stopped: {e}")
                try:
                    loop.call_soon_threadsafe(queue.put_nowait, None)
                except RuntimeError:
                    return

        threading.Thread(target=pump, name="mcp-stdin-reader", daemon=True).start()

    async def send(self, message: dict) -> None:
        """Send a message to stdout."""
        if self._closed:
            raise RuntimeError("Transport is closed")

        content = json.dumps(message)

        try:
            self.output.write(content + "\n")
            self.output.flush()
        except Exception as e:
            raise RuntimeError(f"Failed to send: {e}")

    async def receive(self) -> Optional[dict]:
        """Receive a message from stdin."""
        if self._closed or self._eof:
            return None

        if self._queue is None:
            self._start_reader()

        while True:
            line = await self._queue.get()
            if line is None:
                self._eof = True
                return None

            line = line.strip()
            if not line:
                continue

            try:
                return json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON: {e}")

    async def close(self) -> None:
        """Close the transport."""
        self._closed = True


def _error_response(status_code: int, code: MCPErrorCode, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    body = MCPResponse.failure(None, MCPError.from_code(code, message)).to_dict()
    return JSONResponse(body, status_code=status_code, headers=headers)


class StreamableHTTPTransport:
    """
    Transport for the MCP Streamable HTTP binding.

    A single instance serves every client; it keeps no session ids and
    holds no per-client state. POSTed messages are handed to the attached
    server one at a time, in body order. Responses come back as JSON, or
    as a Server-Sent-Events stream when the client accepts one and
    ``json_response`` is off.
    """

    def __init__(self, json_response: bool = False):
        self.json_response = json_response
        self._handler: Optional[MessageHandler] = None

    @property
    def attached(self) -> bool:
        return self._handler is not None

    def attach(self, handler: MessageHandler) -> None:
        """Attach the server-side message handler."""
        self._handler = handler

    async def close(self) -> None:
        self._handler = None

    async def handle_request(self, request: Request) -> Response:
        """Relay one HTTP request into the attached server."""
        if self._handler is None:
            raise RuntimeError("Transport is not connected to a server")

        if request.method == "POST":
            return await self._handle_post(request)

        return _error_response(
            405,
            MCPErrorCode.INVALID_REQUEST,
            "Method not allowed",
            headers={"Allow": "POST"},
        )

    async def _handle_post(self, request: Request) -> Response:
        accept = request.headers.get("accept", "*/*")
        accepts_sse = "text/event-stream" in accept
        accepts_json = "application/json" in accept or "*/*" in accept
        if not (accepts_sse or accepts_json):
            return _error_response(
                406,
                MCPErrorCode.INVALID_REQUEST,
                "Not Acceptable: client must accept application/json or text/event-stream",
            )

        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type:
            return _error_response(
                415,
                MCPErrorCode.INVALID_REQUEST,
                "Unsupported Media Type: Content-Type must be application/json",
            )

        body = await request.body()
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return _error_response(400, MCPErrorCode.PARSE_ERROR, f"Parse error: {e}")

        messages = split_batch(payload)
        if not messages:
            return _error_response(400, MCPErrorCode.INVALID_REQUEST, "Empty batch")

        if not any(_needs_response(m) for m in messages):
            for message in messages:
                await self._handler(message)
            return Response(status_code=202)

        if accepts_sse and not (self.json_response and accepts_json):
            return StreamingResponse(
                self._stream(messages),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache"},
            )

        responses = await self._collect(messages)
        if isinstance(payload, list):
            return JSONResponse(responses)
        return JSONResponse(responses[0])

    async def _collect(self, messages: List[Any]) -> List[dict]:
        responses = []
        for message in messages:
            response = await self._handler(message)
            if response is not None:
                responses.append(response)
        return responses

    async def _stream(self, messages: List[Any]) -> AsyncIterator[str]:
        for message in messages:
            response = await self._handler(message)
            if response is not None:
                yield f"event: message\ndata: {json.dumps(response)}\n\n"


def _needs_response(message: Any) -> bool:
    # non-objects are answered with an error
    if not isinstance(message, dict):
        return True
    return "method" in message and message.get("id") is not None
