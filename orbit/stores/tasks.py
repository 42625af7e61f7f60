"""Task store -- scheduled-task definitions, run records and the due scan.

The store never triggers anything itself. An external driver polls
find_due_tasks(), executes what is due, records a TaskRun with write_run()
and rolls next_run forward with advance() (or update()).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from orbit.errors import InvalidSchedule, NotFound
from orbit.storage.records import StorageBackend, new_record_id
from orbit.stores.agents import validate_agent_name
from orbit.stores.schedule import compute_next_run
from orbit.stores.schemas import (
    DueTask,
    ScheduledTask,
    TaskInput,
    TaskRun,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

_SCHEDULE_FIELDS = ("schedule_type", "schedule_value")


class TaskStore:
    """Per-agent tasks under tasks/<id>.json with runs in tasks/runs.jsonl."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    def _tasks(self, agent_name: str):
        return self._backend.records(
            ("agents", validate_agent_name(agent_name), "tasks"), ScheduledTask
        )

    def _runs(self, agent_name: str):
        return self._backend.log(
            ("agents", validate_agent_name(agent_name), "tasks"), TaskRun, "runs.jsonl"
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self, agent_name: str, spec: TaskInput, now: datetime | None = None
    ) -> ScheduledTask:
        """Persist an active task. Raises InvalidSchedule before writing anything."""
        next_run = compute_next_run(spec.schedule_type, spec.schedule_value, now)
        task = ScheduledTask(
            id=new_record_id(),
            agent_name=agent_name,
            name=spec.name,
            prompt=spec.prompt,
            schedule_type=spec.schedule_type,
            schedule_value=spec.schedule_value,
            context_mode=spec.context_mode,
            status="active",
            next_run=next_run,
            last_run=None,
        )
        await self._tasks(agent_name).put(task.id, task)
        logger.info(
            "Created %s task %s for %s: %s (next: %s)",
            task.schedule_type, task.id, agent_name, task.prompt[:80], next_run,
        )
        return task

    async def get(self, agent_name: str, task_id: str) -> ScheduledTask | None:
        return await self._tasks(agent_name).get(task_id)

    async def require(self, agent_name: str, task_id: str) -> ScheduledTask:
        task = await self.get(agent_name, task_id)
        if task is None:
            raise NotFound(f"Task not found: {agent_name}/{task_id}")
        return task

    async def list_by_agent(self, agent_name: str) -> list[ScheduledTask]:
        tasks = await self._tasks(agent_name).list()
        return sorted(tasks, key=lambda t: (t.created_at, t.id))

    async def update(
        self,
        agent_name: str,
        task_id: str,
        changes: TaskUpdate,
        now: datetime | None = None,
    ) -> ScheduledTask:
        """Apply the fields explicitly set on ``changes``.

        next_run is recomputed only when schedule_type or schedule_value
        actually changes (an explicit next_run in the same update wins).
        """
        task = await self.require(agent_name, task_id)
        fields = changes.model_dump(exclude_unset=True)

        schedule_changed = any(
            name in fields and fields[name] is not None and fields[name] != getattr(task, name)
            for name in _SCHEDULE_FIELDS
        )
        # Schedule fields are never cleared
        for name in _SCHEDULE_FIELDS:
            if fields.get(name, ...) is None:
                del fields[name]

        updated = task.model_copy(update=fields)
        if schedule_changed:
            next_run = compute_next_run(updated.schedule_type, updated.schedule_value, now)
            if "next_run" not in fields:
                updated = updated.model_copy(update={"next_run": next_run})

        await self._tasks(agent_name).put(task_id, updated)
        logger.debug("Updated task %s for %s: %s", task_id, agent_name, sorted(fields))
        return updated

    async def delete(self, agent_name: str, task_id: str) -> None:
        if not await self._tasks(agent_name).delete(task_id):
            raise NotFound(f"Task not found: {agent_name}/{task_id}")
        logger.info("Deleted task %s for %s", task_id, agent_name)

    async def pause(self, agent_name: str, task_id: str) -> ScheduledTask:
        return await self.update(agent_name, task_id, TaskUpdate(status="paused"))

    async def resume(
        self, agent_name: str, task_id: str, now: datetime | None = None
    ) -> ScheduledTask:
        """Reactivate a task with next_run recomputed from now."""
        task = await self.require(agent_name, task_id)
        next_run = compute_next_run(task.schedule_type, task.schedule_value, now)
        return await self.update(
            agent_name, task_id, TaskUpdate(status="active", next_run=next_run)
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def advance(
        self, agent_name: str, task_id: str, ran_at: datetime | None = None
    ) -> ScheduledTask:
        """Roll a task forward after it ran.

        Recurring tasks get a fresh next_run from ran_at. A ``once`` task is
        completed with next_run cleared so it never refires. A task whose
        stored schedule no longer parses is paused instead of refiring on
        every poll.
        """
        ran_at = ran_at or datetime.now(UTC)
        task = await self.require(agent_name, task_id)

        if task.schedule_type == "once":
            changes = TaskUpdate(status="completed", next_run=None, last_run=ran_at)
        else:
            try:
                next_run = compute_next_run(task.schedule_type, task.schedule_value, ran_at)
            except InvalidSchedule:
                logger.error(
                    "Task %s for %s has an invalid schedule %r, pausing",
                    task_id, agent_name, task.schedule_value,
                )
                changes = TaskUpdate(status="paused", next_run=None, last_run=ran_at)
            else:
                changes = TaskUpdate(next_run=next_run, last_run=ran_at)

        updated = await self.update(agent_name, task_id, changes)
        logger.info(
            "Advanced task %s for %s (status: %s, next: %s)",
            task_id, agent_name, updated.status, updated.next_run,
        )
        return updated

    async def find_due_tasks(self, now: datetime | None = None) -> list[DueTask]:
        """Active tasks with next_run <= now across all agents, earliest first."""
        now = now or datetime.now(UTC)
        due: list[DueTask] = []
        for agent_name in await self._backend.children(("agents",)):
            for task in await self.list_by_agent(agent_name):
                if task.status == "active" and task.next_run is not None and task.next_run <= now:
                    due.append(DueTask(agent_name=agent_name, task=task))
        due.sort(key=lambda d: (d.task.next_run, d.agent_name, d.task.id))
        return due

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def write_run(self, agent_name: str, run: TaskRun) -> TaskRun:
        """Append a run record. Does not touch the originating task."""
        await self._runs(agent_name).append(run)
        return run

    async def list_runs(self, agent_name: str, task_id: str | None = None) -> list[TaskRun]:
        """Run records in write order, optionally for one task."""
        runs = await self._runs(agent_name).read()
        if task_id is None:
            return runs
        return [r for r in runs if r.task_id == task_id]


def new_run(
    task_id: str,
    started_at: datetime,
    *,
    result: str | None = None,
    error: str | None = None,
    completed_at: datetime | None = None,
) -> TaskRun:
    """Build a TaskRun; status is error whenever ``error`` is set."""
    completed_at = completed_at or datetime.now(UTC)
    return TaskRun(
        id=new_record_id(),
        task_id=task_id,
        status="error" if error is not None else "success",
        result=result,
        error=error,
        duration_ms=max(0, int((completed_at - started_at).total_seconds() * 1000)),
        started_at=started_at,
        completed_at=completed_at,
    )
