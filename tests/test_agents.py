"""Tests for the AgentDirectory."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from orbit.errors import AlreadyExists, NotFound
from orbit.stores.agents import WorkspaceFile, validate_agent_name
from orbit.stores.schemas import SendMessage


class TestAgentNames:
    @pytest.mark.parametrize("name", ["bot-a", "Bot_1", "a", "agent.v2"])
    def test_valid(self, name):
        assert validate_agent_name(name) == name

    @pytest.mark.parametrize("name", ["", "-lead", "a/b", "..", "has space", "x" * 65])
    def test_invalid(self, name):
        with pytest.raises(ValueError):
            validate_agent_name(name)


class TestAgentDirectory:
    async def test_create_lays_out_workspace(self, directory):
        agent = await directory.create("bot-a", description="Tester")
        root = directory.agent_dir("bot-a")

        assert agent.name == "bot-a"
        assert agent.status == "active"
        assert agent.last_active_at is None
        assert agent.workspace_path == str(root)
        for sub in ("workspace", "memory", "sessions", "tasks", "inbox/pending", "inbox/archive"):
            assert (root / sub).is_dir()
        identity = (root / WorkspaceFile.IDENTITY).read_text(encoding="utf-8")
        assert "bot-a" in identity
        assert "Tester" in identity
        assert (root / WorkspaceFile.MEMORY).exists()

    async def test_duplicate_name_rejected(self, directory):
        await directory.create("bot-a")
        with pytest.raises(AlreadyExists):
            await directory.create("bot-a")
        assert len(await directory.list()) == 1

    async def test_create_after_mail_arrived(self, directory, inbox):
        await inbox.send(SendMessage(from_agent="bot-b", to_agent="bot-a", message="early"))
        agent = await directory.create("bot-a")
        assert agent.name == "bot-a"
        assert len(await inbox.get_pending("bot-a")) == 1

    async def test_get_and_require(self, directory):
        assert await directory.get("ghost") is None
        with pytest.raises(NotFound):
            await directory.require("ghost")
        await directory.create("bot-a")
        assert (await directory.require("bot-a")).name == "bot-a"
        assert await directory.exists("bot-a")

    async def test_list(self, directory):
        assert await directory.list() == []
        for name in ("charlie", "alpha", "bravo"):
            await directory.create(name)
        assert {a.name for a in await directory.list()} == {"alpha", "bravo", "charlie"}

    async def test_ensure_is_idempotent(self, directory):
        first = await directory.ensure("bot-a")
        second = await directory.ensure("bot-a")
        assert first.created_at == second.created_at

    async def test_touch_sets_last_active(self, directory):
        await directory.create("bot-a")
        at = datetime(2026, 1, 2, 3, 4, tzinfo=UTC)
        agent = await directory.touch("bot-a", at)
        assert agent.last_active_at == at
        assert (await directory.get("bot-a")).last_active_at == at

    async def test_update_fields(self, directory):
        await directory.create("bot-a")
        agent = await directory.update("bot-a", status="inactive", model="m-1", permission_mode="safe")
        assert (agent.status, agent.model, agent.permission_mode) == ("inactive", "m-1", "safe")

    async def test_delete_cascades(self, directory, tasks, inbox, sessions):
        from orbit.stores.schemas import TaskInput

        await directory.create("bot-a")
        await tasks.create("bot-a", TaskInput(prompt="p", schedule_type="interval", schedule_value="1000"))
        await inbox.send(SendMessage(from_agent="x", to_agent="bot-a", message="m"))
        session = await sessions.create("bot-a")
        await sessions.append_message("bot-a", session.id, "user", "hi")

        await directory.delete("bot-a")

        assert not directory.agent_dir("bot-a").exists()
        assert await directory.get("bot-a") is None
        assert await tasks.list_by_agent("bot-a") == []
        assert await inbox.get_pending("bot-a") == []
        assert await sessions.list_by_agent("bot-a") == []
        assert await sessions.get_messages("bot-a", session.id) == []

    async def test_delete_missing_raises(self, directory):
        with pytest.raises(NotFound):
            await directory.delete("ghost")
