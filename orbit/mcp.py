"""MCP tool servers handed to the reasoning engine.

Each built-in server runs as its own stdio process bound to one agent:

  python -m orbit.mcp orbit-tools --agent bot-a
  python -m orbit.mcp memory-tools --agent bot-a

Uses the mcp library's low-level Server over the stdio transport. stdout
carries the protocol, so logging goes to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from orbit.config import Settings
from orbit.logs import configure_logging
from orbit.runtime.memory import MemoryIndex
from orbit.storage import open_backend
from orbit.stores.agents import AgentDirectory, validate_agent_name
from orbit.stores.inbox import InboxStore
from orbit.stores.tasks import TaskStore
from orbit.tools import (
    BUILTIN_SERVERS,
    MEMORY_SERVER,
    ORBIT_SERVER,
    ToolDispatcher,
    register_memory_tools,
    register_orbit_tools,
)

logger = logging.getLogger(__name__)


def create_tool_server(server_name: str, dispatcher: ToolDispatcher) -> Server:
    """Expose every tool registered on ``dispatcher`` as an MCP server."""
    server = Server(server_name)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(
                name=definition["name"],
                description=definition["description"],
                inputSchema=definition["input_schema"],
            )
            for definition in dispatcher.tool_definitions()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        text, is_error = await dispatcher.dispatch(name, arguments or {})
        if is_error:
            logger.warning("Tool %s failed: %s", name, text)
        return [TextContent(type="text", text=text)]

    return server


async def serve(server_name: str, agent_name: str, settings: Settings) -> None:
    """Run one built-in tool server on stdio until the client disconnects."""
    backend = await open_backend(settings)
    memory: MemoryIndex | None = None
    try:
        dispatcher = ToolDispatcher()
        if server_name == ORBIT_SERVER:
            register_orbit_tools(dispatcher, agent_name, TaskStore(backend), InboxStore(backend))
        elif server_name == MEMORY_SERVER:
            directory = AgentDirectory(backend, settings.base_path)
            memory = MemoryIndex(directory, settings.memory_command, settings.memory_enabled)
            await memory.check_available()
            register_memory_tools(dispatcher, agent_name, memory)
        else:
            raise ValueError(f"Unknown tool server: {server_name}")

        server = create_tool_server(server_name, dispatcher)
        logger.info("Serving %s for %s (%s)", server_name, agent_name, ", ".join(dispatcher.names))
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        if memory is not None:
            await memory.close()
        await backend.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="orbit.mcp", description=__doc__.splitlines()[0])
    parser.add_argument("server", choices=BUILTIN_SERVERS)
    parser.add_argument("--agent", required=True, help="Agent the tools act for")
    args = parser.parse_args(argv)
    try:
        validate_agent_name(args.agent)
    except ValueError as exc:
        parser.error(str(exc))

    settings = Settings()
    configure_logging(settings.log_level)
    asyncio.run(serve(args.server, args.agent, settings))


if __name__ == "__main__":
    main()
