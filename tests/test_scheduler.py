"""Tests for the TaskScheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeEngine

from orbit.engine.events import Error, Result, SessionStarted
from orbit.scheduler import TaskScheduler
from orbit.stores.schemas import TaskInput, TaskUpdate


def _later(hours: int = 2) -> datetime:
    return datetime.now(UTC) + timedelta(hours=hours)


@pytest.fixture
async def scheduler(tasks, sessions, pool, settings, deps):
    await deps.directory.create("bot-a")
    s = TaskScheduler(tasks, sessions, pool, settings)
    yield s
    await s.stop()


class TestRunOnce:
    async def test_runs_due_task_and_advances(self, scheduler, tasks, engine):
        task = await tasks.create(
            "bot-a", TaskInput(prompt="daily digest", schedule_type="interval", schedule_value="3600000")
        )
        assert await scheduler.run_once() == 0

        assert await scheduler.run_once(now=_later()) == 1

        prompt, options = engine.calls[0]
        assert prompt == "daily digest"
        assert options.resume_handle is None

        [run] = await tasks.list_runs("bot-a", task.id)
        assert run.status == "success"
        assert run.result == "hello"
        assert run.duration_ms >= 0

        updated = await tasks.get("bot-a", task.id)
        assert updated.last_run == run.completed_at
        assert updated.next_run == run.completed_at + timedelta(hours=1)

    async def test_cron_session_type_in_journal(self, scheduler, tasks, memory):
        await tasks.create(
            "bot-a", TaskInput(prompt="digest", schedule_type="cron", schedule_value="0 9 * * *")
        )
        await scheduler.run_once(now=_later(48))
        assert memory.entries[0][1].session_type == "cron"

    async def test_failed_run_recorded_and_advanced(self, scheduler, tasks, deps):
        deps.engine = FakeEngine(events=[], error=RuntimeError("engine down"))
        task = await tasks.create(
            "bot-a", TaskInput(prompt="x", schedule_type="interval", schedule_value="60000")
        )
        await scheduler.run_once(now=_later())

        [run] = await tasks.list_runs("bot-a", task.id)
        assert run.status == "error"
        assert "engine down" in run.error
        updated = await tasks.get("bot-a", task.id)
        assert updated.status == "active"
        assert updated.next_run > run.completed_at

    async def test_engine_error_event_recorded_as_error(self, scheduler, tasks, deps):
        deps.engine = FakeEngine(events=[SessionStarted("h"), Error("max turns")])
        task = await tasks.create(
            "bot-a", TaskInput(prompt="x", schedule_type="interval", schedule_value="60000")
        )
        await scheduler.run_once(now=_later())

        [run] = await tasks.list_runs("bot-a", task.id)
        assert run.status == "error"
        assert run.error == "max turns"
        assert run.result is None
        updated = await tasks.get("bot-a", task.id)
        assert updated.next_run > run.completed_at

    async def test_result_after_error_event_is_success(self, scheduler, tasks, deps):
        deps.engine = FakeEngine(events=[Error("tool failed"), Result("recovered")])
        task = await tasks.create(
            "bot-a", TaskInput(prompt="x", schedule_type="interval", schedule_value="60000")
        )
        await scheduler.run_once(now=_later())

        [run] = await tasks.list_runs("bot-a", task.id)
        assert run.status == "success"
        assert run.result == "recovered"

    async def test_unknown_agent_recorded_as_error(self, scheduler, tasks):
        task = await tasks.create(
            "ghost", TaskInput(prompt="x", schedule_type="interval", schedule_value="60000")
        )
        await scheduler.run_once(now=_later())
        [run] = await tasks.list_runs("ghost", task.id)
        assert run.status == "error"
        assert "ghost" in run.error

    async def test_once_task_completes(self, scheduler, tasks):
        past = (datetime.now(UTC) - timedelta(minutes=1)).isoformat()
        task = await tasks.create(
            "bot-a", TaskInput(prompt="remind me", schedule_type="once", schedule_value=past)
        )
        assert await scheduler.run_once() == 1
        updated = await tasks.get("bot-a", task.id)
        assert updated.status == "completed"
        assert updated.next_run is None
        assert await scheduler.run_once() == 0

    async def test_paused_task_not_run(self, scheduler, tasks, engine):
        task = await tasks.create(
            "bot-a", TaskInput(prompt="x", schedule_type="interval", schedule_value="60000")
        )
        await tasks.pause("bot-a", task.id)
        assert await scheduler.run_once(now=_later()) == 0
        assert engine.calls == []

    async def test_due_order(self, scheduler, tasks, engine):
        now = datetime.now(UTC)
        for prompt, minutes in (("second", 5), ("first", 10), ("third", 1)):
            task = await tasks.create(
                "bot-a", TaskInput(prompt=prompt, schedule_type="interval", schedule_value="3600000")
            )
            await tasks.update("bot-a", task.id, TaskUpdate(next_run=now - timedelta(minutes=minutes)))

        assert await scheduler.run_once(now=now) == 3
        assert [prompt for prompt, _ in engine.calls] == ["first", "second", "third"]


class TestContextMode:
    async def test_main_mode_creates_then_reuses_session(self, scheduler, tasks, sessions, engine):
        await tasks.create(
            "bot-a",
            TaskInput(prompt="check in", schedule_type="interval", schedule_value="60000", context_mode="main"),
        )
        await scheduler.run_once(now=_later())
        [session] = await sessions.list_by_agent("bot-a")
        assert session.title == "Main"
        assert session.external_session_handle == "engine-session-1"

        await scheduler.run_once(now=_later(4))
        assert len(await sessions.list_by_agent("bot-a")) == 1
        assert engine.calls[1][1].resume_handle == "engine-session-1"
        assert len(await sessions.get_messages("bot-a", session.id)) == 4

    async def test_main_mode_uses_latest_session(self, scheduler, tasks, sessions, engine):
        old = await sessions.create("bot-a", external_session_handle="old")
        latest = await sessions.create("bot-a", external_session_handle="latest")
        await sessions.append_message("bot-a", latest.id, "user", "hi")
        await tasks.create(
            "bot-a",
            TaskInput(prompt="x", schedule_type="interval", schedule_value="60000", context_mode="main"),
        )
        await scheduler.run_once(now=_later())
        assert engine.calls[0][1].resume_handle == "latest"
        assert await sessions.get_messages("bot-a", old.id) == []


class TestLoop:
    async def test_start_runs_due_tasks(self, scheduler, tasks, engine):
        past = (datetime.now(UTC) - timedelta(seconds=1)).isoformat()
        await tasks.create("bot-a", TaskInput(prompt="ping", schedule_type="once", schedule_value=past))

        await scheduler.start()
        await scheduler.start()
        for _ in range(100):
            if engine.calls:
                break
            await asyncio.sleep(0.02)
        await scheduler.stop()

        assert [prompt for prompt, _ in engine.calls] == ["ping"]

    async def test_overlapping_tick_skipped(self, scheduler, tasks, pool, deps):
        deps.engine = FakeEngine(block=True)
        past = (datetime.now(UTC) - timedelta(seconds=1)).isoformat()
        await tasks.create("bot-a", TaskInput(prompt="slow", schedule_type="once", schedule_value=past))

        first = asyncio.create_task(scheduler.run_once())
        await deps.engine.started.wait()
        assert await scheduler.run_once() == 0

        (await pool.get("bot-a")).abort()
        assert await first == 1
        [run] = await tasks.list_runs("bot-a")
        assert run.status == "error"
