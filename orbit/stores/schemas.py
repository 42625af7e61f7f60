"""Pydantic DTOs for every persisted orbit record.

These models are both the on-disk JSON shape and the public contract of
the stores.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

AgentStatus = Literal["active", "inactive"]
PermissionMode = Literal["safe", "ask", "allow-all"]
ScheduleType = Literal["cron", "interval", "once"]
ContextMode = Literal["isolated", "main"]
TaskStatus = Literal["active", "paused", "completed"]
RunStatus = Literal["success", "error"]
MessageType = Literal["request", "response"]
MessageStatus = Literal["pending", "archived"]
Role = Literal["user", "assistant"]
SessionType = Literal["chat", "heartbeat", "cron"]


def utcnow() -> datetime:
    return datetime.now(UTC)


# --- Agents ---


class AgentMetadata(BaseModel):
    """Identity record, written only by the AgentDirectory."""

    name: str
    status: AgentStatus = "active"
    description: str | None = None
    model: str | None = None
    permission_mode: PermissionMode = "allow-all"
    workspace_path: str
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime | None = None


# --- Tasks ---


class TaskInput(BaseModel):
    """Input for scheduling a new task."""

    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    name: str | None = None


class TaskUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied."""

    name: str | None = None
    prompt: str | None = None
    schedule_type: ScheduleType | None = None
    schedule_value: str | None = None
    context_mode: ContextMode | None = None
    status: TaskStatus | None = None
    next_run: datetime | None = None
    last_run: datetime | None = None


class ScheduledTask(BaseModel):
    id: str
    agent_name: str
    name: str | None = None
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    status: TaskStatus = "active"
    next_run: datetime | None = None
    last_run: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TaskRun(BaseModel):
    """One execution attempt. Append-only, never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    status: RunStatus
    result: str | None = None
    error: str | None = None
    duration_ms: int
    started_at: datetime
    completed_at: datetime


class DueTask(BaseModel):
    agent_name: str
    task: ScheduledTask


# --- Inbox ---


class SendMessage(BaseModel):
    """Input for sending a message to another agent's inbox."""

    from_agent: str
    to_agent: str
    message: str
    message_type: MessageType = "request"
    request_id: str | None = None


class InboxMessage(BaseModel):
    id: str
    from_agent: str
    to_agent: str
    message: str
    message_type: MessageType = "request"
    request_id: str | None = None
    status: MessageStatus = "pending"
    claimed_by: str | None = None  # session that archived the message
    created_at: datetime = Field(default_factory=utcnow)
    read_at: datetime | None = None


# --- Sessions ---


class SessionMetadata(BaseModel):
    id: str
    title: str | None = None
    external_session_handle: str | None = None  # resumption token from the engine
    model: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime | None = None
    message_count: int = 0


class SessionUpdate(BaseModel):
    title: str | None = None
    external_session_handle: str | None = None
    model: str | None = None


class SessionMessage(BaseModel):
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


# --- Memory ---


class MemoryEntry(BaseModel):
    """One journal entry, written at the end of every turn."""

    session_type: SessionType
    prompt: str
    result: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
