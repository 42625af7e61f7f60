"""Reasoning engine adapter for the ``claude`` CLI in stream-json mode.

Each invocation is one subprocess run inside the agent's working directory:

    claude --print --output-format stream-json --verbose --model M
           --max-turns N [--resume HANDLE] [--append-system-prompt TEXT]
           [--mcp-config JSON] <permission flags>

The prompt is written to stdin. Every stdout line is a JSON object that
parse_stream_line() maps onto engine events; unknown lines are ignored.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from orbit.engine.events import (
    EngineEvent,
    EngineOptions,
    Error,
    Result,
    SessionStarted,
    TextDelta,
    ToolUse,
)
from orbit.errors import Cancelled, DelegationFailure

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results; the asyncio default is 64 KiB
_STREAM_LIMIT = 16 * 1024 * 1024
_TERMINATE_GRACE = 5.0

_PERMISSION_FLAGS: dict[str, list[str]] = {
    "safe": ["--permission-mode", "plan"],
    "ask": ["--permission-mode", "default"],
    "allow-all": ["--dangerously-skip-permissions"],
}


def parse_stream_line(line: str) -> list[EngineEvent]:
    """Map one stream-json line onto zero or more engine events."""
    line = line.strip()
    if not line:
        return []
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON engine output: %s", line[:200])
        return []
    if not isinstance(data, dict):
        return []

    kind = data.get("type")
    if kind == "system":
        if data.get("subtype") == "init" and data.get("session_id"):
            return [SessionStarted(handle=str(data["session_id"]))]
        return []

    if kind == "assistant":
        events: list[EngineEvent] = []
        message = data.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(TextDelta(text=block["text"]))
            elif block.get("type") == "tool_use":
                events.append(
                    ToolUse(
                        name=str(block.get("name", "")),
                        input=block.get("input") or {},
                        id=block.get("id"),
                    )
                )
        return events

    if kind == "result":
        subtype = str(data.get("subtype", ""))
        if data.get("is_error") or subtype.startswith("error"):
            return [Error(message=str(data.get("result") or subtype or "engine error"))]
        return [Result(text=str(data.get("result") or ""))]

    return []


class ClaudeCliEngine:
    """Runs one ``claude`` subprocess per turn and streams its events."""

    def __init__(self, command: str = "claude") -> None:
        self._command = command

    def build_command(self, options: EngineOptions) -> list[str]:
        cmd = [
            self._command,
            "--print",
            "--output-format", "stream-json",
            "--verbose",
            "--model", options.model,
            "--max-turns", str(options.max_turns),
        ]
        if options.resume_handle:
            cmd += ["--resume", options.resume_handle]
        if options.system_prompt_append:
            cmd += ["--append-system-prompt", options.system_prompt_append]
        if options.tool_manifest:
            cmd += ["--mcp-config", json.dumps({"mcpServers": options.tool_manifest})]
        cmd += _PERMISSION_FLAGS[options.permission_mode]
        return cmd

    async def invoke(self, prompt: str, options: EngineOptions) -> AsyncIterator[EngineEvent]:
        if options.cancellation.cancelled:
            raise Cancelled("Turn cancelled before the engine started")

        cmd = self.build_command(options)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(options.working_directory),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise DelegationFailure(f"Cannot start engine {self._command!r}: {exc}") from exc

        logger.debug("Engine started (pid=%s, resume=%s)", process.pid, options.resume_handle)
        stderr_chunks: list[bytes] = []
        stderr_task = asyncio.create_task(_drain(process.stderr, stderr_chunks))
        cancel_task = asyncio.create_task(options.cancellation.wait())
        terminal = False

        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()

            while True:
                read_task = asyncio.ensure_future(process.stdout.readline())
                done, _ = await asyncio.wait(
                    {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_task in done:
                    read_task.cancel()
                    await _terminate(process)
                    raise Cancelled("Turn cancelled while delegating")

                raw = read_task.result()
                if not raw:
                    break
                for event in parse_stream_line(raw.decode("utf-8", errors="replace")):
                    if isinstance(event, (Result, Error)):
                        terminal = True
                    yield event

            returncode = await process.wait()
            await stderr_task
            if returncode != 0 and not terminal:
                stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
                raise DelegationFailure(
                    f"Engine exited with code {returncode}: {stderr[:500] or 'no output'}"
                )
        finally:
            cancel_task.cancel()
            if process.returncode is None:
                await _terminate(process)
            if not stderr_task.done():
                stderr_task.cancel()


async def _drain(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    """Collect stderr concurrently so a chatty process never blocks on a full pipe."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            break
        chunks.append(chunk)
        text = chunk.decode("utf-8", errors="replace").strip()
        if text:
            logger.debug("Engine stderr: %s", text[:500])


async def _terminate(process: Any) -> None:
    """terminate(), then kill() if the process ignores it."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE)
    except asyncio.TimeoutError:
        logger.warning("Engine pid=%s ignored SIGTERM, killing", process.pid)
        process.kill()
        await process.wait()
