"""Per-agent persisted stores: directory, tasks, inbox, sessions."""

from orbit.stores.agents import AgentDirectory, WorkspaceFile, validate_agent_name
from orbit.stores.inbox import InboxStore
from orbit.stores.schedule import compute_next_run
from orbit.stores.sessions import SessionStore
from orbit.stores.tasks import TaskStore, new_run

__all__ = [
    "AgentDirectory",
    "InboxStore",
    "SessionStore",
    "TaskStore",
    "WorkspaceFile",
    "compute_next_run",
    "new_run",
    "validate_agent_name",
]
