"""Agent runtime handle -- runs one agent's turns.

A turn moves Idle -> Composing -> Delegating -> Committing -> Idle:

1. Composing: read the pending inbox, session history and workspace files
   and build the engine context. Nothing is written, so a failure here
   leaves no residue.
2. Delegating: stream events from the reasoning engine back to the caller
   unchanged while capturing the session handle (first wins) and the final
   result (last wins). The only cancellable phase.
3. Committing: runs on success, engine error, cancellation and early close
   alike. Archives the inbox messages drained at Composing time, touches
   lastActiveAt, persists the transcript, writes the journal entry and
   schedules a memory reindex. Each step is best-effort and logged on
   failure; none of them can fail the turn.

Engine failures surface as DelegationFailure and aborts as Cancelled, both
raised only after Committing has finished.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum

from orbit.config import Settings
from orbit.engine.events import (
    CancellationToken,
    EngineEvent,
    EngineOptions,
    ReasoningEngine,
    Result,
    SessionStarted,
)
from orbit.errors import Cancelled, DelegationFailure, NotFound
from orbit.runtime.context import ContextBuilder
from orbit.runtime.memory import MemoryIndex
from orbit.runtime.sources import load_sources
from orbit.stores.agents import AgentDirectory
from orbit.stores.inbox import InboxStore
from orbit.stores.schemas import (
    InboxMessage,
    MemoryEntry,
    SessionMetadata,
    SessionType,
    SessionUpdate,
)
from orbit.stores.sessions import SessionStore
from orbit.stores.tasks import TaskStore
from orbit.tools import ToolManifest, build_manifest

logger = logging.getLogger(__name__)


class TurnState(StrEnum):
    IDLE = "idle"
    COMPOSING = "composing"
    DELEGATING = "delegating"
    COMMITTING = "committing"
    CANCELLED = "cancelled"


@dataclass
class RuntimeDeps:
    """Everything a runtime handle needs, shared by every handle in a pool."""

    settings: Settings
    directory: AgentDirectory
    tasks: TaskStore
    inbox: InboxStore
    sessions: SessionStore
    engine: ReasoningEngine
    memory: MemoryIndex
    context: ContextBuilder = field(default_factory=ContextBuilder)


@dataclass
class _Turn:
    """Working state of one turn, shared between delegation and commit."""

    prompt: str
    session_type: SessionType
    session: SessionMetadata | None
    drained: list[InboxMessage]
    token: CancellationToken
    handle: str | None = None
    result: str | None = None


class AgentRuntime:
    """Stateful facade over one agent: stores plus a resumable engine handle."""

    def __init__(self, name: str, deps: RuntimeDeps) -> None:
        self.name = name
        self._deps = deps
        self._state = TurnState.IDLE
        self._token: CancellationToken | None = None
        self._active_turns = 0
        self._last_used = time.monotonic()

    @classmethod
    async def open(cls, name: str, deps: RuntimeDeps) -> AgentRuntime:
        """Build a handle for a registered agent with an existing workspace."""
        await deps.directory.require(name)
        working_dir = deps.directory.working_dir(name)
        if not await asyncio.to_thread(working_dir.is_dir):
            raise NotFound(f"Workspace missing for agent {name}: {working_dir}")
        logger.debug("Opened runtime for %s", name)
        return cls(name, deps)

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a turn is in flight. Busy handles are never evicted."""
        return self._active_turns > 0

    @property
    def last_used(self) -> float:
        """time.monotonic() of the last turn start or end."""
        return self._last_used

    def abort(self) -> None:
        """Cancel the in-flight turn, if any. Committing still runs."""
        if self._token is None or self._token.cancelled:
            return
        self._token.cancel()
        if self._state is TurnState.DELEGATING:
            self._state = TurnState.CANCELLED
        logger.info("Abort requested for %s", self.name)

    async def build_manifest(self) -> ToolManifest:
        deps = self._deps
        sources = await asyncio.to_thread(
            load_sources, deps.directory.agent_dir(self.name) / "sources"
        )
        return build_manifest(self.name, deps.settings, deps.memory.is_available(), sources)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def chat(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        session_type: SessionType = "chat",
        model: str | None = None,
    ) -> AsyncIterator[EngineEvent]:
        """Run one turn, yielding engine events as they arrive.

        With ``session_id`` the turn resumes that session's engine handle and
        its transcript is appended to the session; without it the turn is
        session-less.
        """
        deps = self._deps
        self._active_turns += 1
        self._last_used = time.monotonic()
        self._state = TurnState.COMPOSING
        token = CancellationToken()
        self._token = token

        try:
            turn, options = await self._compose(prompt, session_id, session_type, model, token)

            self._state = TurnState.DELEGATING
            failure: Exception | None = None
            cancelled = False
            try:
                async with aclosing(deps.engine.invoke(prompt, options)) as stream:
                    async for event in stream:
                        if isinstance(event, SessionStarted):
                            if turn.handle is None:
                                turn.handle = event.handle
                        elif isinstance(event, Result):
                            turn.result = event.text
                        yield event
            except Cancelled:
                cancelled = True
            except Exception as exc:
                failure = exc
            finally:
                # Also reached on task cancellation and aclose()
                self._state = TurnState.COMMITTING
                await self._commit(turn)

            if failure is not None:
                if isinstance(failure, DelegationFailure):
                    raise failure
                raise DelegationFailure(f"Engine failed for {self.name}: {failure}") from failure
            if cancelled or token.cancelled:
                raise Cancelled(f"Turn cancelled for {self.name}")
        finally:
            self._active_turns -= 1
            self._last_used = time.monotonic()
            if self._token is token:
                self._token = None
            if not self.busy:
                self._state = TurnState.IDLE

    async def _compose(
        self,
        prompt: str,
        session_id: str | None,
        session_type: SessionType,
        model: str | None,
        token: CancellationToken,
    ) -> tuple[_Turn, EngineOptions]:
        deps = self._deps
        agent = await deps.directory.require(self.name)

        session = None
        history = []
        if session_id is not None:
            session = await deps.sessions.require(self.name, session_id)
            messages = await deps.sessions.get_messages(self.name, session_id)
            history = messages[-deps.settings.context_history_messages:]

        drained = await deps.inbox.get_pending(self.name)
        system_prompt = await deps.context.build(
            deps.directory.agent_dir(self.name), session_type, drained, history
        )
        manifest = await self.build_manifest()

        options = EngineOptions(
            model=model or (session.model if session else None) or agent.model or deps.settings.model,
            working_directory=deps.directory.working_dir(self.name),
            system_prompt_append=system_prompt,
            tool_manifest=manifest.render(),
            resume_handle=session.external_session_handle if session else None,
            cancellation=token,
            permission_mode=agent.permission_mode,
            max_turns=deps.settings.engine_max_turns,
        )
        if drained:
            logger.info("Turn for %s drained %d inbox message(s)", self.name, len(drained))
        turn = _Turn(
            prompt=prompt,
            session_type=session_type,
            session=session,
            drained=drained,
            token=token,
        )
        return turn, options

    async def _commit(self, turn: _Turn) -> None:
        """Best-effort side effects. Never raises."""
        deps = self._deps
        name = self.name
        session_id = turn.session.id if turn.session else None

        if turn.drained:
            try:
                await deps.inbox.mark_read(
                    name, [msg.id for msg in turn.drained], claimed_by=session_id
                )
            except Exception:
                logger.exception("Failed to archive inbox for %s", name)

        try:
            await deps.directory.touch(name)
        except Exception:
            logger.exception("Failed to update lastActiveAt for %s", name)

        if turn.session is not None:
            await self._save_transcript(turn)

        try:
            await deps.memory.append_entry(
                name,
                MemoryEntry(
                    session_type=turn.session_type,
                    prompt=turn.prompt,
                    result=turn.result or "",
                ),
            )
        except Exception:
            logger.warning("Failed to write memory journal for %s", name, exc_info=True)

        if deps.memory.is_available():
            try:
                deps.memory.schedule_update(name)
            except Exception:
                logger.warning("Failed to schedule memory index update for %s", name, exc_info=True)

    async def _save_transcript(self, turn: _Turn) -> None:
        deps = self._deps
        session = turn.session
        try:
            if turn.handle and turn.handle != session.external_session_handle:
                await deps.sessions.update(
                    self.name, session.id, SessionUpdate(external_session_handle=turn.handle)
                )
            await deps.sessions.append_message(self.name, session.id, "user", turn.prompt)
            if turn.result:
                await deps.sessions.append_message(self.name, session.id, "assistant", turn.result)
        except Exception:
            logger.exception("Failed to save transcript for %s/%s", self.name, session.id)
