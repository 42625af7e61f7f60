"""Context composition -- builds the system-prompt append for one turn.

Reads the agent's personality files, long-term and recent memory, recent
session history and the pending inbox, and joins them as markdown sections
in a fixed priority order. Pure read: nothing is written here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

from orbit.stores.agents import WorkspaceFile
from orbit.stores.schemas import InboxMessage, SessionMessage, SessionType

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
TRUNCATION_MARKER = "\n\n[... content truncated ...]\n\n"
_HISTORY_MESSAGE_CHARS = 2_000


def truncate_content(content: str, max_chars: int) -> str:
    """Keep the first 70% and last 20% of an oversized text."""
    if len(content) <= max_chars:
        return content
    head = int(max_chars * 0.7)
    tail = int(max_chars * 0.2)
    return content[:head] + TRUNCATION_MARKER + (content[-tail:] if tail else "")


def _read_file(path: Path, max_chars: int) -> str | None:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Cannot read context file %s: %s", path, exc)
        return None
    content = content.strip()
    return truncate_content(content, max_chars) if content else None


class ContextBuilder:
    """Assembles the engine-facing context for an agent's turn."""

    def __init__(self, max_file_chars: int = 50_000) -> None:
        self._max_file_chars = max_file_chars

    async def _read(self, path: Path) -> str | None:
        return await asyncio.to_thread(_read_file, path, self._max_file_chars)

    async def build(
        self,
        agent_dir: Path,
        session_type: SessionType,
        inbox: Sequence[InboxMessage] = (),
        history: Sequence[SessionMessage] = (),
        today: date | None = None,
    ) -> str:
        today = today or datetime.now(UTC).date()
        yesterday = today - timedelta(days=1)
        memory_dir = agent_dir / "memory"

        (
            identity, soul, user, agents, tools, heartbeat, bootstrap,
            long_term, memory_yesterday, memory_today,
        ) = await asyncio.gather(
            self._read(agent_dir / WorkspaceFile.IDENTITY),
            self._read(agent_dir / WorkspaceFile.SOUL),
            self._read(agent_dir / WorkspaceFile.USER),
            self._read(agent_dir / WorkspaceFile.AGENTS),
            self._read(agent_dir / WorkspaceFile.TOOLS),
            self._read(agent_dir / WorkspaceFile.HEARTBEAT),
            self._read(agent_dir / WorkspaceFile.BOOTSTRAP),
            self._read(agent_dir / WorkspaceFile.MEMORY),
            self._read(memory_dir / f"{yesterday.isoformat()}.md"),
            self._read(memory_dir / f"{today.isoformat()}.md"),
        )

        sections = [s for s in (identity, soul, user, agents, tools) if s]

        if session_type == "heartbeat" and heartbeat:
            sections.append(f"## Heartbeat Tasks\n\n{heartbeat}")
        if bootstrap:
            sections.append(f"## First Run Setup\n\n{bootstrap}")

        memory = self._format_memory(long_term, memory_yesterday, memory_today, yesterday, today)
        if memory:
            sections.append(memory)

        if history:
            sections.append(self._format_history(history))
        if inbox:
            sections.append(self._format_inbox(inbox))

        sections.append(
            f"## Current Session\n\n- **Type**: {session_type}\n- **Date**: {today.isoformat()}"
        )
        return SECTION_SEPARATOR.join(sections)

    def _format_memory(
        self,
        long_term: str | None,
        memory_yesterday: str | None,
        memory_today: str | None,
        yesterday: date,
        today: date,
    ) -> str | None:
        parts: list[str] = []
        if long_term:
            parts.append(f"### Long-term Memory\n{long_term}")
        if memory_yesterday or memory_today:
            parts.append("### Recent Activity")
            if memory_yesterday:
                parts.append(f"**Yesterday ({yesterday.isoformat()}):**\n{memory_yesterday}")
            if memory_today:
                parts.append(f"**Today ({today.isoformat()}):**\n{memory_today}")
        if not parts:
            return None
        return "## Memory\n\n" + "\n\n".join(parts)

    def _format_history(self, history: Sequence[SessionMessage]) -> str:
        lines = [
            f"**{msg.role}**: {truncate_content(msg.content, _HISTORY_MESSAGE_CHARS)}"
            for msg in history
        ]
        return "## Recent Conversation\n\n" + "\n\n".join(lines)

    def _format_inbox(self, inbox: Sequence[InboxMessage]) -> str:
        lines = []
        for msg in inbox:
            ref = f" (re: {msg.request_id})" if msg.request_id else ""
            lines.append(f"- From **{msg.from_agent}** [{msg.message_type}{ref}]: {msg.message}")
        return f"## Inbox\n\nYou have {len(inbox)} message(s):\n" + "\n".join(lines)
