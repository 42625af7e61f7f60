"""Agent pool -- at most one live runtime handle per agent name.

Handles are built lazily on first get(). Concurrent get() calls for a name
that is still being constructed all await the same construction, so two
handles are never built for one name. A failed construction propagates to
every waiting caller and leaves nothing in the pool.

A single background task evicts handles idle for longer than the timeout.
Handles in the middle of a turn are skipped and reconsidered on a later
tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable

from orbit.runtime.agent import AgentRuntime

logger = logging.getLogger(__name__)

HandleFactory = Callable[[str], Awaitable[AgentRuntime]]


class AgentPool:
    """In-memory cache of AgentRuntime handles keyed by agent name."""

    def __init__(
        self,
        factory: HandleFactory,
        idle_timeout: float = 600.0,
        check_interval: float | None = None,
    ) -> None:
        self._factory = factory
        self._idle_timeout = idle_timeout
        self._check_interval = check_interval or idle_timeout / 2
        self._handles: dict[str, AgentRuntime] = {}
        self._last_access: dict[str, float] = {}
        self._constructing: dict[str, asyncio.Task] = {}
        # Bumped by release(); a construction started under an older
        # generation is handed to its callers but never inserted
        self._generation: defaultdict[str, int] = defaultdict(int)
        self._eviction_task: asyncio.Task | None = None

    async def get(self, name: str) -> AgentRuntime:
        handle = self._handles.get(name)
        if handle is None:
            construction = self._constructing.get(name)
            if construction is None:
                construction = asyncio.create_task(
                    self._construct(name, self._generation[name]), name=f"pool-open-{name}"
                )
                self._constructing[name] = construction
            # One caller being cancelled must not cancel the shared construction
            handle = await asyncio.shield(construction)
        self._last_access[name] = time.monotonic()
        return handle

    async def _construct(self, name: str, generation: int) -> AgentRuntime:
        try:
            handle = await self._factory(name)
        except Exception:
            logger.warning("Failed to open agent %s", name, exc_info=True)
            raise
        finally:
            if self._constructing.get(name) is asyncio.current_task():
                del self._constructing[name]

        if self._generation[name] == generation:
            self._handles[name] = handle
            self._last_access[name] = time.monotonic()
            logger.debug("Pooled agent %s (size=%d)", name, len(self._handles))
        return handle

    def release(self, name: str) -> bool:
        """Drop the handle now, aborting any in-flight turn. True if one was pooled."""
        self._generation[name] += 1
        self._constructing.pop(name, None)
        self._last_access.pop(name, None)
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.abort()
        logger.debug("Released agent %s", name)
        return True

    def has(self, name: str) -> bool:
        return name in self._handles

    def size(self) -> int:
        return len(self._handles)

    # ------------------------------------------------------------------
    # Idle eviction
    # ------------------------------------------------------------------

    def evict_idle(self, now: float | None = None) -> list[str]:
        """Evict idle handles that are not mid-turn. Returns the evicted names."""
        now = time.monotonic() if now is None else now
        evicted = []
        for name, handle in list(self._handles.items()):
            if handle.busy:
                continue
            last = max(self._last_access.get(name, 0.0), handle.last_used)
            if now - last > self._idle_timeout:
                self.release(name)
                evicted.append(name)
        if evicted:
            logger.info("Evicted %d idle agent(s): %s", len(evicted), ", ".join(evicted))
        return evicted

    def start_eviction(self) -> None:
        """Start the single eviction loop. Idempotent."""
        if self._eviction_task is not None and not self._eviction_task.done():
            return
        self._eviction_task = asyncio.create_task(self._eviction_loop(), name="agent-pool-eviction")
        logger.info(
            "Agent pool eviction started (idle_timeout=%ss, interval=%ss)",
            self._idle_timeout, self._check_interval,
        )

    async def stop_eviction(self) -> None:
        """Cancel the eviction loop. No timer is left running on return."""
        if self._eviction_task is None:
            return
        self._eviction_task.cancel()
        try:
            await self._eviction_task
        except asyncio.CancelledError:
            pass
        self._eviction_task = None
        logger.info("Agent pool eviction stopped")

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            try:
                self.evict_idle()
            except Exception:
                logger.exception("Agent pool eviction tick failed")

    async def close(self) -> None:
        """Stop eviction and release every handle."""
        await self.stop_eviction()
        for name in list(self._handles):
            self.release(name)
