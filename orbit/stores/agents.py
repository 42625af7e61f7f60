"""Agent directory -- registry of agent identities and their workspace roots.

The directory is the sole writer of identity and status. Each agent owns a
tree under ``<base>/agents/<name>/``; deleting the agent is the only
operation that cascades over everything beneath it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from orbit.errors import AlreadyExists, NotFound
from orbit.storage.records import StorageBackend
from orbit.stores.schemas import AgentMetadata, AgentStatus, PermissionMode

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")

# Subdirectories laid out for every new agent
_LAYOUT = (
    "workspace",
    "memory",
    "sessions",
    "tasks",
    "inbox/pending",
    "inbox/archive",
    "sources",
)


class WorkspaceFile(StrEnum):
    AGENTS = "AGENTS.md"
    SOUL = "SOUL.md"
    IDENTITY = "IDENTITY.md"
    USER = "USER.md"
    HEARTBEAT = "HEARTBEAT.md"
    BOOTSTRAP = "BOOTSTRAP.md"
    TOOLS = "TOOLS.md"
    MEMORY = "MEMORY.md"


IDENTITY_TEMPLATE = """# Identity

- **Name**: {name}
- **Created**: {created}
- **Description**: {description}
"""

MEMORY_TEMPLATE = "# Long-term Memory\n\n(No entries yet)\n"


def validate_agent_name(name: str) -> str:
    """Agent names double as directory names: one safe path segment."""
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValueError(
            f"Invalid agent name {name!r}: use 1-64 letters, digits, '.', '_' or '-', "
            "starting with a letter or digit"
        )
    return name


def _create_tree(agent_dir: Path, identity: str) -> bool:
    """Lay out the agent tree. Returns True if the agent directory is new.

    The directory may already exist without an identity record when mail
    was sent to the agent before it was registered.
    """
    fresh = not agent_dir.exists()
    agent_dir.mkdir(parents=True, exist_ok=True)
    for sub in _LAYOUT:
        (agent_dir / sub).mkdir(parents=True, exist_ok=True)
    for filename, content in (
        (WorkspaceFile.IDENTITY, identity),
        (WorkspaceFile.MEMORY, MEMORY_TEMPLATE),
    ):
        path = agent_dir / filename
        if not path.exists():
            path.write_text(content, encoding="utf-8")
    return fresh


class AgentDirectory:
    """Creates, reads and deletes agents. Metadata goes through the backend."""

    def __init__(self, backend: StorageBackend, base_path: Path) -> None:
        self._backend = backend
        self._agents_path = Path(base_path) / "agents"
        self._records = backend.records(("agents",), AgentMetadata, "{key}/agent.json")
        self._create_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def agent_dir(self, name: str) -> Path:
        return self._agents_path / validate_agent_name(name)

    def working_dir(self, name: str) -> Path:
        """Directory the reasoning engine runs in."""
        return self.agent_dir(name) / "workspace"

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        description: str | None = None,
        model: str | None = None,
        permission_mode: PermissionMode = "allow-all",
    ) -> AgentMetadata:
        """Register a new agent and lay out its workspace.

        Raises AlreadyExists for a duplicate name; leaves no partial state on
        any failure.
        """
        agent_dir = self.agent_dir(name)
        now = datetime.now(UTC)
        metadata = AgentMetadata(
            name=name,
            description=description,
            model=model,
            permission_mode=permission_mode,
            workspace_path=str(agent_dir),
            created_at=now,
        )
        identity = IDENTITY_TEMPLATE.format(
            name=name,
            created=now.date().isoformat(),
            description=description or "A helpful AI assistant",
        )

        async with self._create_lock:
            if await self._records.get(name) is not None:
                raise AlreadyExists(f"Agent already exists: {name}")
            fresh = await asyncio.to_thread(_create_tree, agent_dir, identity)
            try:
                await self._records.put(name, metadata)
            except BaseException:
                if fresh:
                    await asyncio.to_thread(shutil.rmtree, agent_dir, True)
                raise

        logger.info("Created agent %s at %s", name, agent_dir)
        return metadata

    async def get(self, name: str) -> AgentMetadata | None:
        return await self._records.get(validate_agent_name(name))

    async def require(self, name: str) -> AgentMetadata:
        agent = await self.get(name)
        if agent is None:
            raise NotFound(f"Agent not found: {name}")
        return agent

    async def list(self) -> list[AgentMetadata]:
        agents = await self._records.list()
        return sorted(agents, key=lambda a: (a.created_at, a.name))

    async def exists(self, name: str) -> bool:
        return await self.get(name) is not None

    async def ensure(self, name: str) -> AgentMetadata:
        """Return the agent, creating it with defaults if missing."""
        existing = await self.get(name)
        if existing is not None:
            return existing
        try:
            return await self.create(name)
        except AlreadyExists:
            return await self.require(name)

    async def update(
        self,
        name: str,
        *,
        status: AgentStatus | None = None,
        description: str | None = None,
        model: str | None = None,
        permission_mode: PermissionMode | None = None,
        last_active_at: datetime | None = None,
    ) -> AgentMetadata:
        agent = await self.require(name)
        changes = {
            key: value
            for key, value in {
                "status": status,
                "description": description,
                "model": model,
                "permission_mode": permission_mode,
                "last_active_at": last_active_at,
            }.items()
            if value is not None
        }
        updated = agent.model_copy(update=changes)
        await self._records.put(name, updated)
        return updated

    async def touch(self, name: str, at: datetime | None = None) -> AgentMetadata:
        """Record the end of a turn."""
        return await self.update(name, last_active_at=at or datetime.now(UTC))

    async def delete(self, name: str) -> None:
        """Remove the agent with its workspace and every descendant record."""
        await self.require(name)
        await self._backend.drop(("agents", name))
        await asyncio.to_thread(shutil.rmtree, self.agent_dir(name), True)
        logger.info("Deleted agent %s", name)
