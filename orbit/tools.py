"""Agent tools and the capability manifest handed to the reasoning engine.

Provides:
- ToolDispatcher: registers tool handlers and dispatches calls by name
- orbit-tools: schedule_task, send_to_agent, list_tasks, pause_task,
  resume_task, cancel_task
- memory-tools: search_memory, remember (only when qmd is available)
- ToolManifest: server name -> connection descriptor, rendered as the
  ``mcpServers`` map the engine consumes

Each tool is an async closure bound to one agent. It returns an MCP-format
response and reports failures as text instead of raising.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from orbit.config import Settings
from orbit.errors import InvalidSchedule, NotFound
from orbit.runtime.memory import MemoryIndex
from orbit.stores.inbox import InboxStore
from orbit.stores.schemas import SendMessage, TaskInput
from orbit.stores.tasks import TaskStore

logger = logging.getLogger(__name__)

ORBIT_SERVER = "orbit-tools"
MEMORY_SERVER = "memory-tools"
BUILTIN_SERVERS = (ORBIT_SERVER, MEMORY_SERVER)


def _mcp_response(text: str) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}]}


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "N/A"


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls.

    Each handler is an async callable that accepts **kwargs and returns
    an MCP-format response: {"content": [{"type": "text", "text": "..."}]}.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error)."""
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = await handler(**args)
            return result["content"][0]["text"], False
        except TypeError as e:
            return f"Invalid arguments for {name}: {e}", True
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions as (name, description, input_schema)."""
        return [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": schema,
            }
            for name, schema in self._schemas.items()
        ]


# ---------------------------------------------------------------------------
# orbit-tools
# ---------------------------------------------------------------------------


def create_orbit_tools(
    agent_name: str, tasks: TaskStore, inbox: InboxStore
) -> dict[str, Any]:
    """Create scheduling and messaging closures bound to ``agent_name``."""

    async def schedule_task(
        prompt: str,
        schedule_type: str,
        schedule_value: str,
        context_mode: str = "isolated",
        name: str | None = None,
    ) -> dict[str, Any]:
        try:
            spec = TaskInput(
                prompt=prompt,
                schedule_type=schedule_type,
                schedule_value=schedule_value,
                context_mode=context_mode,
                name=name,
            )
            task = await tasks.create(agent_name, spec)
        except (InvalidSchedule, ValidationError) as e:
            return _mcp_response(f"Error: {e}")
        return _mcp_response(
            f"Task scheduled successfully (ID: {task.id}). Next run: {_fmt_time(task.next_run)}"
        )

    async def send_to_agent(
        target_agent: str,
        message: str,
        message_type: str = "request",
        request_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            msg = await inbox.send(
                SendMessage(
                    from_agent=agent_name,
                    to_agent=target_agent,
                    message=message,
                    message_type=message_type,
                    request_id=request_id,
                )
            )
        except (ValueError, ValidationError) as e:
            return _mcp_response(f"Error: {e}")
        return _mcp_response(f"Message sent to {target_agent} (ID: {msg.id})")

    async def list_tasks() -> dict[str, Any]:
        all_tasks = await tasks.list_by_agent(agent_name)
        if not all_tasks:
            return _mcp_response("No scheduled tasks.")
        lines = []
        for t in all_tasks:
            label = f"{t.name}: " if t.name else ""
            lines.append(
                f"- [{t.status}] {t.id} | {t.schedule_type} {t.schedule_value} | "
                f"{label}{t.prompt[:80]} (next: {_fmt_time(t.next_run)})"
            )
        return _mcp_response("\n".join(lines))

    async def pause_task(task_id: str) -> dict[str, Any]:
        try:
            await tasks.pause(agent_name, task_id)
        except (NotFound, ValueError) as e:
            return _mcp_response(f"Error: {e}")
        return _mcp_response(f"Task {task_id} paused")

    async def resume_task(task_id: str) -> dict[str, Any]:
        try:
            task = await tasks.resume(agent_name, task_id)
        except (NotFound, ValueError) as e:
            return _mcp_response(f"Error: {e}")
        return _mcp_response(f"Task {task_id} resumed. Next run: {_fmt_time(task.next_run)}")

    async def cancel_task(task_id: str) -> dict[str, Any]:
        try:
            await tasks.delete(agent_name, task_id)
        except (NotFound, ValueError) as e:
            return _mcp_response(f"Error: {e}")
        return _mcp_response(f"Task {task_id} cancelled")

    return {
        "schedule_task": schedule_task,
        "send_to_agent": send_to_agent,
        "list_tasks": list_tasks,
        "pause_task": pause_task,
        "resume_task": resume_task,
        "cancel_task": cancel_task,
    }


_SCHEDULE_TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Schedule a recurring or one-time task. context_mode 'isolated' runs in a fresh "
        "session (include all context in the prompt); 'main' continues the latest session. "
        "schedule_type 'cron' takes a 5-field expression (e.g. '0 9 * * *'), 'interval' "
        "takes milliseconds (e.g. '3600000'), 'once' takes an ISO timestamp."
    ),
    "properties": {
        "prompt": {"type": "string", "description": "The task prompt to execute"},
        "schedule_type": {
            "type": "string",
            "enum": ["cron", "interval", "once"],
            "description": "Type of schedule",
        },
        "schedule_value": {
            "type": "string",
            "description": "Cron expression, milliseconds, or ISO timestamp",
        },
        "context_mode": {
            "type": "string",
            "enum": ["isolated", "main"],
            "default": "isolated",
            "description": "Session context mode",
        },
        "name": {"type": "string", "description": "Human-readable task name"},
    },
    "required": ["prompt", "schedule_type", "schedule_value"],
}

_SEND_TO_AGENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Send a message to another agent. It appears in their inbox on their next session."
    ),
    "properties": {
        "target_agent": {"type": "string", "description": "Name of the target agent"},
        "message": {"type": "string", "description": "Message content"},
        "message_type": {
            "type": "string",
            "enum": ["request", "response"],
            "default": "request",
            "description": "Type of message",
        },
        "request_id": {
            "type": "string",
            "description": "ID of the request this message answers",
        },
    },
    "required": ["target_agent", "message"],
}

_LIST_TASKS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List all scheduled tasks for this agent",
    "properties": {},
    "required": [],
}


def _task_id_schema(description: str) -> dict[str, Any]:
    return {
        "type": "object",
        "description": description,
        "properties": {"task_id": {"type": "string", "description": "Task ID"}},
        "required": ["task_id"],
    }


def register_orbit_tools(
    dispatcher: ToolDispatcher, agent_name: str, tasks: TaskStore, inbox: InboxStore
) -> None:
    closures = create_orbit_tools(agent_name, tasks, inbox)
    dispatcher.register("schedule_task", closures["schedule_task"], _SCHEDULE_TASK_SCHEMA)
    dispatcher.register("send_to_agent", closures["send_to_agent"], _SEND_TO_AGENT_SCHEMA)
    dispatcher.register("list_tasks", closures["list_tasks"], _LIST_TASKS_SCHEMA)
    dispatcher.register(
        "pause_task", closures["pause_task"], _task_id_schema("Pause a scheduled task by ID")
    )
    dispatcher.register(
        "resume_task", closures["resume_task"], _task_id_schema("Resume a paused task by ID")
    )
    dispatcher.register(
        "cancel_task",
        closures["cancel_task"],
        _task_id_schema("Cancel and delete a scheduled task by ID"),
    )


# ---------------------------------------------------------------------------
# memory-tools
# ---------------------------------------------------------------------------


def create_memory_tools(agent_name: str, memory: MemoryIndex) -> dict[str, Any]:
    """Create memory closures bound to ``agent_name``."""

    async def search_memory(query: str, limit: int = 6) -> dict[str, Any]:
        results = await memory.search(agent_name, query, limit=max(1, min(limit, 20)))
        if not results:
            return _mcp_response("No relevant memories found.")
        lines = []
        for r in results:
            lines.append(f"- {r['title'] or r['path']} ({r['path']}, score {r['score']:.2f})")
            if r["snippet"]:
                lines.append(f"  {r['snippet'][:300]}")
        return _mcp_response("\n".join(lines))

    async def remember(content: str) -> dict[str, Any]:
        if not content.strip():
            return _mcp_response("Error: content is empty")
        await memory.remember(agent_name, content.strip())
        memory.schedule_update(agent_name)
        return _mcp_response("Saved to long-term memory.")

    return {"search_memory": search_memory, "remember": remember}


_SEARCH_MEMORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search your daily journal, long-term notes and workspace files",
    "properties": {
        "query": {"type": "string", "description": "What to search for"},
        "limit": {"type": "integer", "description": "Max results (default: 6)"},
    },
    "required": ["query"],
}

_REMEMBER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Append a note to long-term memory (MEMORY.md)",
    "properties": {
        "content": {"type": "string", "description": "The note to keep"},
    },
    "required": ["content"],
}


def register_memory_tools(
    dispatcher: ToolDispatcher, agent_name: str, memory: MemoryIndex
) -> None:
    closures = create_memory_tools(agent_name, memory)
    dispatcher.register("search_memory", closures["search_memory"], _SEARCH_MEMORY_SCHEMA)
    dispatcher.register("remember", closures["remember"], _REMEMBER_SCHEMA)


# ---------------------------------------------------------------------------
# Capability manifest
# ---------------------------------------------------------------------------


@dataclass
class ToolManifest:
    """Server name -> connection descriptor, assembled once per turn."""

    servers: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return list(self.servers)

    def add(self, name: str, descriptor: dict[str, Any]) -> None:
        if name in self.servers:
            logger.warning("Tool source %s shadows an existing server, skipping", name)
            return
        self.servers[name] = descriptor

    def render(self) -> dict[str, dict[str, Any]]:
        """The ``mcpServers`` map handed to the engine."""
        return {name: dict(descriptor) for name, descriptor in self.servers.items()}


def builtin_server(server: str, agent_name: str, settings: Settings) -> dict[str, Any]:
    """Descriptor that launches ``python -m orbit.mcp <server>`` for an agent."""
    env = {
        "ORBIT_BASE_PATH": str(settings.base_path),
        "ORBIT_STORAGE_BACKEND": settings.storage_backend,
        "ORBIT_MEMORY_COMMAND": settings.memory_command,
        "ORBIT_LOG_LEVEL": settings.log_level,
    }
    if settings.db_path is not None:
        env["ORBIT_DB_PATH"] = str(settings.db_path)
    return {
        "type": "stdio",
        "command": sys.executable,
        "args": ["-m", "orbit.mcp", server, "--agent", agent_name],
        "env": env,
    }


def build_manifest(
    agent_name: str,
    settings: Settings,
    memory_available: bool,
    sources: dict[str, dict[str, Any]] | None = None,
) -> ToolManifest:
    """Built-in tools, memory tools if available, then per-agent sources."""
    manifest = ToolManifest()
    manifest.add(ORBIT_SERVER, builtin_server(ORBIT_SERVER, agent_name, settings))
    if memory_available:
        manifest.add(MEMORY_SERVER, builtin_server(MEMORY_SERVER, agent_name, settings))
    for name, descriptor in (sources or {}).items():
        manifest.add(name, descriptor)
    return manifest
