"""Orbit entry point.

Initializes all components and runs the background services:
  Settings -> StorageBackend -> stores -> MemoryIndex -> engine -> AgentPool -> TaskScheduler

Runs until SIGINT/SIGTERM, then stops the scheduler and the pool's
eviction loop before closing storage.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from orbit.config import Settings
from orbit.engine.claude_cli import ClaudeCliEngine
from orbit.engine.events import ReasoningEngine
from orbit.logs import configure_logging
from orbit.runtime.agent import AgentRuntime, RuntimeDeps
from orbit.runtime.context import ContextBuilder
from orbit.runtime.memory import MemoryIndex
from orbit.runtime.pool import AgentPool
from orbit.scheduler import TaskScheduler
from orbit.storage import open_backend
from orbit.stores.agents import AgentDirectory
from orbit.stores.inbox import InboxStore
from orbit.stores.sessions import SessionStore
from orbit.stores.tasks import TaskStore

logger = logging.getLogger(__name__)


async def create_components(
    settings: Settings, engine: ReasoningEngine | None = None
) -> dict[str, Any]:
    """Initialize all components in dependency order.

    Nothing is started here; see start_components().
    """
    backend = await open_backend(settings)
    directory = AgentDirectory(backend, settings.base_path)
    tasks = TaskStore(backend)
    inbox = InboxStore(backend)
    sessions = SessionStore(backend)

    memory = MemoryIndex(directory, settings.memory_command, settings.memory_enabled)
    await memory.check_available()

    deps = RuntimeDeps(
        settings=settings,
        directory=directory,
        tasks=tasks,
        inbox=inbox,
        sessions=sessions,
        engine=engine or ClaudeCliEngine(settings.engine_command),
        memory=memory,
        context=ContextBuilder(settings.context_max_file_chars),
    )

    async def open_runtime(name: str) -> AgentRuntime:
        return await AgentRuntime.open(name, deps)

    pool = AgentPool(
        open_runtime,
        idle_timeout=settings.pool_idle_timeout,
        check_interval=settings.eviction_interval,
    )
    scheduler = TaskScheduler(tasks, sessions, pool, settings)

    return {
        "backend": backend,
        "directory": directory,
        "tasks": tasks,
        "inbox": inbox,
        "sessions": sessions,
        "memory": memory,
        "deps": deps,
        "pool": pool,
        "scheduler": scheduler,
    }


async def start_components(components: dict[str, Any]) -> None:
    components["pool"].start_eviction()
    await components["scheduler"].start()


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Orbit...")

    scheduler = components.get("scheduler")
    if scheduler:
        await scheduler.stop()

    pool = components.get("pool")
    if pool:
        await pool.close()

    memory = components.get("memory")
    if memory:
        await memory.close()

    backend = components.get("backend")
    if backend:
        await backend.close()

    logger.info("Orbit shutdown complete.")


async def run(settings: Settings) -> None:
    """Run until interrupted."""
    components = await create_components(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    try:
        await start_components(components)
        agents = await components["directory"].list()
        logger.info("Orbit started with %d agent(s)", len(agents))
        await stop.wait()
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point: parse settings, configure logging, run services."""
    settings = Settings()
    configure_logging(settings.log_level)

    logger.info("Starting Orbit at %s", settings.base_path)
    logger.info("Storage: %s", settings.storage_backend)
    logger.info("Model: %s", settings.model)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
