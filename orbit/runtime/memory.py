"""Agent memory: the daily journal, long-term notes and the qmd search index.

Journal files live at ``<agent>/memory/YYYY-MM-DD.md`` and long-term notes at
``<agent>/MEMORY.md``. Both are plain markdown owned by the agent. The
optional ``qmd`` CLI indexes them for hybrid search; when it is not
installed every index operation is skipped and memory tools are not offered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from orbit.errors import OrbitError
from orbit.stores.agents import AgentDirectory, WorkspaceFile
from orbit.stores.schemas import MemoryEntry

logger = logging.getLogger(__name__)

_PROMPT_CHARS = 200
_RESULT_CHARS = 500
_COMMAND_TIMEOUT = 300.0


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def format_entry(entry: MemoryEntry) -> str:
    """Render one journal entry as markdown."""
    return (
        f"\n### {entry.timestamp.strftime('%H:%M')} - {entry.session_type}\n\n"
        f"**Prompt:** {_clip(entry.prompt, _PROMPT_CHARS)}\n\n"
        f"**Summary:** {_clip(entry.result, _RESULT_CHARS)}\n\n"
        "---\n"
    )


def _append_journal(path: Path, day: str, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        if fh.tell() == 0:
            fh.write(f"# Daily Memory - {day}\n\n")
        fh.write(text)


def _append_long_term(path: Path, text: str) -> None:
    with path.open("a", encoding="utf-8") as fh:
        if fh.tell() == 0:
            fh.write("# Long-term Memory\n")
        fh.write(text)


def _read_optional(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


class MemoryIndex:
    """Journal writer plus a thin async wrapper around the qmd CLI."""

    def __init__(
        self,
        directory: AgentDirectory,
        command: str = "qmd",
        enabled: bool = True,
    ) -> None:
        self._directory = directory
        self._command = command
        self._enabled = enabled
        self._available: bool | None = None
        # Strong refs so fire-and-forget updates are not garbage collected
        self._updates: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def check_available(self) -> bool:
        """Look for the qmd binary once and cache the answer."""
        if self._available is not None:
            return self._available
        if not self._enabled:
            self._available = False
            logger.info("Memory index disabled by configuration")
            return False

        found = await asyncio.to_thread(shutil.which, self._command)
        self._available = found is not None
        if self._available:
            logger.info("qmd detected at %s, memory search enabled", found)
        else:
            logger.warning(
                "qmd is not installed (%s not on PATH), memory search disabled",
                self._command,
            )
        return self._available

    def is_available(self) -> bool:
        """Cached result of check_available(); False until it has run."""
        return bool(self._available)

    # ------------------------------------------------------------------
    # Journal and long-term notes
    # ------------------------------------------------------------------

    def memory_dir(self, agent_name: str) -> Path:
        return self._directory.agent_dir(agent_name) / "memory"

    def index_path(self, agent_name: str) -> Path:
        return self._directory.agent_dir(agent_name) / "qmd.sqlite"

    async def append_entry(self, agent_name: str, entry: MemoryEntry) -> Path:
        """Append a turn summary to the journal for the entry's day."""
        day = entry.timestamp.astimezone(UTC).date().isoformat()
        path = self.memory_dir(agent_name) / f"{day}.md"
        await asyncio.to_thread(_append_journal, path, day, format_entry(entry))
        return path

    async def read_daily(self, agent_name: str, day: date) -> str | None:
        return await asyncio.to_thread(
            _read_optional, self.memory_dir(agent_name) / f"{day.isoformat()}.md"
        )

    async def read_long_term(self, agent_name: str) -> str | None:
        return await asyncio.to_thread(
            _read_optional, self._directory.agent_dir(agent_name) / WorkspaceFile.MEMORY
        )

    async def remember(self, agent_name: str, text: str, at: datetime | None = None) -> None:
        """Append a dated note to MEMORY.md."""
        stamp = (at or datetime.now(UTC)).strftime("%Y-%m-%d %H:%M")
        path = self._directory.agent_dir(agent_name) / WorkspaceFile.MEMORY
        await asyncio.to_thread(_append_long_term, path, f"\n## {stamp}\n\n{text}\n")

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    async def _run(self, agent_name: str, *args: str) -> str:
        env = {**os.environ, "INDEX_PATH": str(self.index_path(agent_name))}
        proc = await asyncio.create_subprocess_exec(
            self._command,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise OrbitError(f"{self._command} {args[0]} timed out for {agent_name}")
        if proc.returncode != 0:
            raise OrbitError(
                f"{self._command} {args[0]} failed for {agent_name} "
                f"(exit {proc.returncode}): {stderr.decode('utf-8', errors='replace')[:500]}"
            )
        return stdout.decode("utf-8", errors="replace")

    async def update_index(self, agent_name: str) -> None:
        """Re-scan changed files, then embed them. Raises OrbitError on failure."""
        await self._run(agent_name, "update")
        await self._run(agent_name, "embed")
        logger.debug("Memory index updated for %s", agent_name)

    def schedule_update(self, agent_name: str) -> asyncio.Task | None:
        """Fire-and-forget update_index(). Failures are logged, never raised."""
        if not self.is_available():
            return None
        task = asyncio.create_task(
            self._update_logged(agent_name), name=f"memory-index-{agent_name}"
        )
        self._updates.add(task)
        task.add_done_callback(self._updates.discard)
        return task

    async def _update_logged(self, agent_name: str) -> None:
        try:
            await self.update_index(agent_name)
        except Exception as exc:
            logger.warning("Failed to update memory index for %s: %s", agent_name, exc)

    async def search(self, agent_name: str, query: str, limit: int = 6) -> list[dict[str, Any]]:
        """Hybrid search over the agent's memory. Empty on any failure."""
        if not self.is_available():
            return []
        try:
            output = await self._run(
                agent_name, "query", query, "--limit", str(limit), "--format", "json"
            )
            items = json.loads(output or "[]")
            if not isinstance(items, list):
                raise ValueError(f"expected a JSON list, got {type(items).__name__}")
            return [
                {
                    "path": str(item.get("path", "")),
                    "title": str(item.get("title", "")),
                    "score": float(item.get("score") or 0),
                    "snippet": str(item.get("snippet", "")),
                }
                for item in items
                if isinstance(item, dict)
            ]
        except (OrbitError, OSError, TypeError, ValueError) as exc:
            logger.warning("Memory search failed for %s: %s", agent_name, exc)
            return []

    async def close(self) -> None:
        """Wait for in-flight index updates to finish."""
        if self._updates:
            await asyncio.gather(*self._updates, return_exceptions=True)
