"""Tests for the SessionStore."""

from __future__ import annotations

import asyncio

import pytest

from orbit.errors import NotFound
from orbit.stores.schemas import SessionUpdate


class TestSessionStore:
    async def test_create(self, sessions):
        session = await sessions.create("bot-a", external_session_handle="h-1", model="m")
        assert session.message_count == 0
        assert session.last_message_at is None
        assert session.external_session_handle == "h-1"
        assert await sessions.get("bot-a", session.id) == session

    async def test_append_twice(self, sessions):
        session = await sessions.create("bot-a")
        await sessions.append_message("bot-a", session.id, "user", "hello")
        await sessions.append_message("bot-a", session.id, "assistant", "hi there")

        messages = await sessions.get_messages("bot-a", session.id)
        assert [(m.role, m.content) for m in messages] == [("user", "hello"), ("assistant", "hi there")]

        updated = await sessions.get("bot-a", session.id)
        assert updated.message_count == 2
        assert updated.last_message_at == messages[-1].timestamp

    async def test_concurrent_appends_keep_count(self, sessions):
        session = await sessions.create("bot-a")
        await asyncio.gather(
            *(sessions.append_message("bot-a", session.id, "user", str(i)) for i in range(10))
        )
        assert (await sessions.get("bot-a", session.id)).message_count == 10
        assert len(await sessions.get_messages("bot-a", session.id)) == 10

    async def test_append_to_missing_session(self, sessions):
        with pytest.raises(NotFound):
            await sessions.append_message("bot-a", "nope", "user", "hello")

    async def test_update_only_given_fields(self, sessions):
        session = await sessions.create("bot-a", external_session_handle="h-1")
        updated = await sessions.update("bot-a", session.id, SessionUpdate(title="Planning"))
        assert updated.title == "Planning"
        assert updated.external_session_handle == "h-1"

    async def test_update_missing(self, sessions):
        with pytest.raises(NotFound):
            await sessions.update("bot-a", "nope", SessionUpdate(title="x"))

    async def test_delete(self, sessions):
        session = await sessions.create("bot-a")
        await sessions.append_message("bot-a", session.id, "user", "hello")
        await sessions.delete("bot-a", session.id)
        assert await sessions.get("bot-a", session.id) is None
        assert await sessions.get_messages("bot-a", session.id) == []

    async def test_delete_missing(self, sessions):
        with pytest.raises(NotFound):
            await sessions.delete("bot-a", "nope")

    async def test_list_and_latest(self, sessions):
        assert await sessions.latest("bot-a") is None
        first = await sessions.create("bot-a")
        second = await sessions.create("bot-a")
        assert {s.id for s in await sessions.list_by_agent("bot-a")} == {first.id, second.id}

        await sessions.append_message("bot-a", first.id, "user", "bump")
        assert (await sessions.latest("bot-a")).id == first.id
