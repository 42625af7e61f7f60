"""Task scheduler -- runs due scheduled tasks on pooled agent runtimes.

Runs a periodic check loop that:
1. Queries tasks whose next_run <= now across all agents, earliest first
2. Runs each one as a turn on the agent's pooled runtime
3. Records a TaskRun and advances the task

A failed run (an exception, or an engine Error event not followed by a
Result) is recorded with status=error and still advances, so a broken
task retries on its next scheduled slot rather than in a hot loop. A failed
``once`` task is completed and never refires.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from orbit.config import Settings
from orbit.engine.events import Error, Result
from orbit.errors import NotFound
from orbit.runtime.pool import AgentPool
from orbit.stores.schemas import DueTask, TaskRun
from orbit.stores.sessions import SessionStore
from orbit.stores.tasks import TaskStore, new_run

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Background scheduler that polls for due tasks and runs them.

    Runs a single asyncio task that wakes every scheduler_poll_interval
    seconds. A tick that starts while the previous one is still running is
    skipped.
    """

    def __init__(
        self,
        tasks: TaskStore,
        sessions: SessionStore,
        pool: AgentPool,
        settings: Settings,
    ) -> None:
        self._tasks = tasks
        self._sessions = sessions
        self._pool = pool
        self._settings = settings
        self._task: asyncio.Task | None = None
        self._running = False
        self._tick_lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the scheduler check loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._check_loop(), name="task-scheduler")
        logger.info(
            "Task scheduler started (poll_interval=%ss)", self._settings.scheduler_poll_interval
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Task scheduler stopped")

    # ------------------------------------------------------------------
    # Check loop
    # ------------------------------------------------------------------

    async def _check_loop(self) -> None:
        """Periodic loop: sleep -> run due tasks -> repeat."""
        while self._running:
            try:
                await asyncio.sleep(self._settings.scheduler_poll_interval)
                fired = await self.run_once()
                if fired:
                    logger.info("Ran %d due task(s)", fired)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Scheduled task check failed")

    async def run_once(self, now: datetime | None = None) -> int:
        """Run every task due at ``now``. Returns how many ran; 0 if a tick is in progress."""
        if self._tick_lock.locked():
            logger.debug("Previous scheduler tick still running, skipping")
            return 0
        async with self._tick_lock:
            due = await self._tasks.find_due_tasks(now)
            fired = 0
            for item in due:
                try:
                    await self._execute(item)
                    fired += 1
                except Exception:
                    logger.exception(
                        "Failed to execute task %s for %s", item.task.id, item.agent_name
                    )
            return fired

    async def _execute(self, item: DueTask) -> TaskRun:
        task = item.task
        agent_name = item.agent_name
        started_at = datetime.now(UTC)
        result: str | None = None
        error: str | None = None

        logger.debug(
            "Running %s task %s for %s: %s",
            task.schedule_type, task.id, agent_name, task.prompt[:80],
        )
        try:
            runtime = await self._pool.get(agent_name)
            session_id = None
            if task.context_mode == "main":
                session_id = await self._main_session(agent_name)
            async for event in runtime.chat(
                task.prompt, session_id=session_id, session_type="cron"
            ):
                if isinstance(event, Result):
                    result = event.text
                    error = None
                elif isinstance(event, Error):
                    error = event.message or "engine reported an error"
            if error is not None:
                logger.warning(
                    "Task %s for %s ended with an engine error: %s", task.id, agent_name, error
                )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Task %s for %s failed: %s", task.id, agent_name, error)

        run = new_run(task.id, started_at, result=result, error=error)
        await self._tasks.write_run(agent_name, run)
        try:
            await self._tasks.advance(agent_name, task.id, ran_at=run.completed_at)
        except NotFound:
            logger.info("Task %s for %s was deleted while running", task.id, agent_name)
        return run

    async def _main_session(self, agent_name: str) -> str:
        """The agent's most recently active session, created if none exists."""
        session = await self._sessions.latest(agent_name)
        if session is None:
            session = await self._sessions.create(agent_name, title="Main")
        return session.id
