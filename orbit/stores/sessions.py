"""Session store -- conversation sessions and their append-only message logs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from orbit.errors import NotFound
from orbit.storage.records import StorageBackend, new_record_id, validate_key
from orbit.stores.agents import validate_agent_name
from orbit.stores.schemas import Role, SessionMessage, SessionMetadata, SessionUpdate

logger = logging.getLogger(__name__)


class SessionStore:
    """One directory per session: session.json plus messages.jsonl."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend
        # Serializes the log-append + counter update for one session
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _records(self, agent_name: str):
        return self._backend.records(
            ("agents", validate_agent_name(agent_name), "sessions"),
            SessionMetadata,
            "{key}/session.json",
        )

    def _log_scope(self, agent_name: str, session_id: str) -> tuple[str, ...]:
        return ("agents", validate_agent_name(agent_name), "sessions", validate_key(session_id))

    def _log(self, agent_name: str, session_id: str):
        return self._backend.log(
            self._log_scope(agent_name, session_id), SessionMessage, "messages.jsonl"
        )

    async def create(
        self,
        agent_name: str,
        external_session_handle: str | None = None,
        model: str | None = None,
        title: str | None = None,
    ) -> SessionMetadata:
        session = SessionMetadata(
            id=new_record_id(),
            title=title,
            external_session_handle=external_session_handle,
            model=model,
        )
        await self._records(agent_name).put(session.id, session)
        logger.debug("Created session %s for %s", session.id, agent_name)
        return session

    async def get(self, agent_name: str, session_id: str) -> SessionMetadata | None:
        return await self._records(agent_name).get(session_id)

    async def require(self, agent_name: str, session_id: str) -> SessionMetadata:
        session = await self.get(agent_name, session_id)
        if session is None:
            raise NotFound(f"Session not found: {agent_name}/{session_id}")
        return session

    async def update(
        self, agent_name: str, session_id: str, changes: SessionUpdate
    ) -> SessionMetadata:
        """Apply the fields explicitly set on ``changes``."""
        session = await self.require(agent_name, session_id)
        updated = session.model_copy(update=changes.model_dump(exclude_unset=True))
        await self._records(agent_name).put(session_id, updated)
        return updated

    async def delete(self, agent_name: str, session_id: str) -> None:
        if not await self._records(agent_name).delete(session_id):
            raise NotFound(f"Session not found: {agent_name}/{session_id}")
        await self._backend.drop(self._log_scope(agent_name, session_id))
        self._locks.pop((agent_name, session_id), None)
        logger.debug("Deleted session %s for %s", session_id, agent_name)

    async def list_by_agent(self, agent_name: str) -> list[SessionMetadata]:
        sessions = await self._records(agent_name).list()
        return sorted(sessions, key=lambda s: (s.created_at, s.id))

    async def latest(self, agent_name: str) -> SessionMetadata | None:
        """Most recently active session, if any."""
        sessions = await self.list_by_agent(agent_name)
        if not sessions:
            return None
        return max(sessions, key=lambda s: (s.last_message_at or s.created_at, s.id))

    async def append_message(
        self, agent_name: str, session_id: str, role: Role, content: str
    ) -> SessionMessage:
        """Append to the log and bump message_count / last_message_at."""
        message = SessionMessage(role=role, content=content)
        async with self._locks[(agent_name, session_id)]:
            session = await self.require(agent_name, session_id)
            await self._log(agent_name, session_id).append(message)
            updated = session.model_copy(
                update={
                    "message_count": session.message_count + 1,
                    "last_message_at": message.timestamp,
                }
            )
            await self._records(agent_name).put(session_id, updated)
        return message

    async def get_messages(self, agent_name: str, session_id: str) -> list[SessionMessage]:
        """Full log in append order."""
        return await self._log(agent_name, session_id).read()
