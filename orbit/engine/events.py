"""Engine-facing types: response events, invocation options, cancellation.

The reasoning engine is an opaque async producer of tagged events. The turn
orchestration consumes the stream once, passes every event through
unchanged, and taps it for the session handle and the final result.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Union

from orbit.stores.schemas import PermissionMode


@dataclass(frozen=True)
class SessionStarted:
    """Resumable session handle. The first occurrence in a stream wins."""

    handle: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolUse:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class Result:
    """Final textual result. May be absent for tool-only terminations."""

    text: str


@dataclass(frozen=True)
class Error:
    message: str


EngineEvent = Union[SessionStarted, TextDelta, ToolUse, Result, Error]


class CancellationToken:
    """One-shot abort signal shared between a turn and its engine call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class EngineOptions:
    model: str
    working_directory: Path
    system_prompt_append: str = ""
    tool_manifest: dict[str, dict[str, Any]] = field(default_factory=dict)
    resume_handle: str | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    permission_mode: PermissionMode = "allow-all"
    max_turns: int = 50


class ReasoningEngine(Protocol):
    def invoke(self, prompt: str, options: EngineOptions) -> AsyncIterator[EngineEvent]: ...
