"""
Process entry point.

Loads ``.env``, configures logging on stderr and runs one serving session.
Startup progress is reported as JSON status lines.
"""

import asyncio
import json
import logging
import sys
from typing import Optional, TextIO

from dotenv import find_dotenv, load_dotenv

from .bridge import ServerSession, serve
from .server import ServerConfig


logger = logging.getLogger("mcp_file_search")


def emit_status(status: str, message: str, stream: TextIO, error: Optional[str] = None) -> None:
    payload = {"status": status, "message": message}
    if error is not None:
        payload["error"] = error
    stream.write(json.dumps(payload) + "\n")
    stream.flush()


def configure_logging(level: str = "INFO") -> None:
    # stdout carries protocol traffic in stdio mode
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def main() -> int:
    load_dotenv(find_dotenv(usecwd=True))

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        emit_status("error", "Failed to start MCP server", sys.stderr, error=str(e))
        return 1

    configure_logging(config.log_level)

    mode = config.transport_mode.lower()
    status_stream = sys.stderr if mode == "stdio" else sys.stdout

    emit_status("starting", f"Starting MCP Server in {mode} mode...", status_stream)

    def on_started(session: ServerSession) -> None:
        emit_status("success", f"MCP Server started in {session.mode.value} mode", status_stream)

    try:
        return asyncio.run(serve(config, on_started=on_started))
    except Exception as e:
        logger.debug("Startup failed", exc_info=True)
        emit_status("error", "Failed to start MCP server", sys.stderr, error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
