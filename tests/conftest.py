"""Shared fixtures: temp-dir settings, both storage backends, stores and fakes.

Every store fixture is parametrized over the file and sqlite backends, so
store and orchestration tests run once per backend.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from orbit.config import Settings
from orbit.engine.events import EngineOptions, Result, SessionStarted, TextDelta
from orbit.errors import Cancelled
from orbit.runtime.agent import AgentRuntime, RuntimeDeps
from orbit.runtime.context import ContextBuilder
from orbit.runtime.pool import AgentPool
from orbit.storage import Database, FileBackend, SqlBackend
from orbit.stores.agents import AgentDirectory
from orbit.stores.inbox import InboxStore
from orbit.stores.schemas import MemoryEntry
from orbit.stores.sessions import SessionStore
from orbit.stores.tasks import TaskStore

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeEngine:
    """Scripted reasoning engine. Records every invocation.

    Yields ``events`` in order, then optionally blocks until the turn's
    cancellation token fires (raising Cancelled) or raises ``error``.
    """

    def __init__(self, events=None, error: Exception | None = None, block: bool = False):
        if events is None:
            events = [SessionStarted("engine-session-1"), TextDelta("hel"), Result("hello")]
        self.events = list(events)
        self.error = error
        self.block = block
        self.calls: list[tuple[str, EngineOptions]] = []
        self.started = asyncio.Event()

    async def invoke(self, prompt: str, options: EngineOptions):
        self.calls.append((prompt, options))
        self.started.set()
        for event in self.events:
            yield event
        if self.block:
            await options.cancellation.wait()
            raise Cancelled("engine stopped")
        if self.error is not None:
            raise self.error


class FakeMemory:
    """In-memory stand-in for MemoryIndex."""

    def __init__(self, available: bool = False, fail: bool = False) -> None:
        self.available = available
        self.fail = fail
        self.entries: list[tuple[str, MemoryEntry]] = []
        self.updates: list[str] = []

    def is_available(self) -> bool:
        return self.available

    async def append_entry(self, agent_name: str, entry: MemoryEntry) -> None:
        if self.fail:
            raise OSError("disk full")
        self.entries.append((agent_name, entry))

    def schedule_update(self, agent_name: str) -> None:
        if self.fail:
            raise RuntimeError("index broken")
        self.updates.append(agent_name)


# ---------------------------------------------------------------------------
# Settings and storage
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        base_path=tmp_path / "orbit",
        memory_enabled=False,
        pool_idle_timeout=60.0,
        scheduler_poll_interval=0.05,
    )


@pytest_asyncio.fixture(params=["file", "sqlite"])
async def backend(request, settings):
    if request.param == "sqlite":
        database = Database(settings)
        await database.connect()
        store_backend = SqlBackend(database)
    else:
        store_backend = FileBackend(settings.base_path)
    yield store_backend
    await store_backend.close()


@pytest.fixture
def directory(backend, settings) -> AgentDirectory:
    return AgentDirectory(backend, settings.base_path)


@pytest.fixture
def tasks(backend) -> TaskStore:
    return TaskStore(backend)


@pytest.fixture
def inbox(backend) -> InboxStore:
    return InboxStore(backend)


@pytest.fixture
def sessions(backend) -> SessionStore:
    return SessionStore(backend)


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def memory() -> FakeMemory:
    return FakeMemory()


@pytest.fixture
def deps(settings, directory, tasks, inbox, sessions, engine, memory) -> RuntimeDeps:
    return RuntimeDeps(
        settings=settings,
        directory=directory,
        tasks=tasks,
        inbox=inbox,
        sessions=sessions,
        engine=engine,
        memory=memory,
        context=ContextBuilder(settings.context_max_file_chars),
    )


@pytest_asyncio.fixture
async def pool(deps):
    async def open_runtime(name: str) -> AgentRuntime:
        return await AgentRuntime.open(name, deps)

    agent_pool = AgentPool(open_runtime, idle_timeout=60.0, check_interval=0.05)
    yield agent_pool
    await agent_pool.close()


async def drain(stream) -> list:
    """Consume an async event stream into a list."""
    return [event async for event in stream]
