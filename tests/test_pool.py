"""Tests for the AgentPool: lazy construction, release and idle eviction."""

from __future__ import annotations

import asyncio
import time

import pytest
from conftest import FakeEngine, drain

from orbit.errors import Cancelled, NotFound
from orbit.runtime.agent import AgentRuntime
from orbit.runtime.pool import AgentPool


@pytest.fixture
async def agents(deps):
    await deps.directory.create("bot-a")
    await deps.directory.create("bot-b")


class TestGet:
    async def test_same_handle_for_same_name(self, pool, agents):
        first = await pool.get("bot-a")
        second = await pool.get("bot-a")
        assert first is second
        assert pool.has("bot-a")
        assert pool.size() == 1

    async def test_distinct_handles_per_name(self, pool, agents):
        a = await pool.get("bot-a")
        b = await pool.get("bot-b")
        assert a is not b
        assert pool.size() == 2

    async def test_concurrent_get_constructs_once(self, deps, agents):
        calls = []
        gate = asyncio.Event()

        async def slow_open(name: str) -> AgentRuntime:
            calls.append(name)
            await gate.wait()
            return await AgentRuntime.open(name, deps)

        pool = AgentPool(slow_open)
        waiters = [asyncio.create_task(pool.get("bot-a")) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        handles = await asyncio.gather(*waiters)

        assert calls == ["bot-a"]
        assert all(h is handles[0] for h in handles)
        await pool.close()

    async def test_failed_construction_leaves_nothing(self, pool):
        with pytest.raises(NotFound):
            await pool.get("ghost")
        assert not pool.has("ghost")
        assert pool.size() == 0

    async def test_cancelled_caller_does_not_cancel_construction(self, deps, agents):
        gate = asyncio.Event()

        async def slow_open(name: str) -> AgentRuntime:
            await gate.wait()
            return await AgentRuntime.open(name, deps)

        pool = AgentPool(slow_open)
        impatient = asyncio.create_task(pool.get("bot-a"))
        patient = asyncio.create_task(pool.get("bot-a"))
        await asyncio.sleep(0)
        impatient.cancel()
        gate.set()

        handle = await patient
        assert pool.has("bot-a")
        assert await pool.get("bot-a") is handle
        await pool.close()


class TestRelease:
    async def test_release(self, pool, agents):
        first = await pool.get("bot-a")
        assert pool.release("bot-a") is True
        assert not pool.has("bot-a")
        assert pool.release("bot-a") is False

        second = await pool.get("bot-a")
        assert second is not first

    async def test_release_during_construction_is_not_reinserted(self, deps, agents):
        gate = asyncio.Event()

        async def slow_open(name: str) -> AgentRuntime:
            await gate.wait()
            return await AgentRuntime.open(name, deps)

        pool = AgentPool(slow_open)
        pending = asyncio.create_task(pool.get("bot-a"))
        await asyncio.sleep(0)
        pool.release("bot-a")
        gate.set()

        await pending
        assert not pool.has("bot-a")
        await pool.close()

    async def test_release_aborts_active_turn(self, deps, pool, agents):
        deps.engine = FakeEngine(block=True)
        handle = await pool.get("bot-a")
        turn = asyncio.create_task(drain(handle.chat("long job")))
        await deps.engine.started.wait()

        pool.release("bot-a")

        with pytest.raises(Cancelled):
            await turn


class TestEviction:
    async def test_evicts_idle(self, pool, agents):
        await pool.get("bot-a")
        assert pool.evict_idle() == []
        assert pool.evict_idle(now=time.monotonic() + 1000) == ["bot-a"]
        assert pool.size() == 0

    async def test_busy_handle_survives(self, deps, pool, agents):
        deps.engine = FakeEngine(block=True)
        handle = await pool.get("bot-a")
        turn = asyncio.create_task(drain(handle.chat("long job")))
        await deps.engine.started.wait()

        assert pool.evict_idle(now=time.monotonic() + 1000) == []
        assert pool.has("bot-a")

        handle.abort()
        with pytest.raises(Cancelled):
            await turn
        assert pool.evict_idle(now=time.monotonic() + 1000) == ["bot-a"]

    async def test_background_loop(self, deps, agents):
        async def open_runtime(name: str) -> AgentRuntime:
            return await AgentRuntime.open(name, deps)

        pool = AgentPool(open_runtime, idle_timeout=0.05, check_interval=0.02)
        pool.start_eviction()
        pool.start_eviction()
        await pool.get("bot-a")

        for _ in range(50):
            if not pool.has("bot-a"):
                break
            await asyncio.sleep(0.02)
        assert not pool.has("bot-a")

        await pool.stop_eviction()
        await pool.stop_eviction()
        await pool.close()

    async def test_close_releases_all(self, pool, agents):
        await pool.get("bot-a")
        await pool.get("bot-b")
        pool.start_eviction()
        await pool.close()
        assert pool.size() == 0
