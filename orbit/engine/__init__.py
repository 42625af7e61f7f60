"""Reasoning engine boundary: event types and the claude CLI adapter."""

from orbit.engine.claude_cli import ClaudeCliEngine, parse_stream_line
from orbit.engine.events import (
    CancellationToken,
    EngineEvent,
    EngineOptions,
    Error,
    ReasoningEngine,
    Result,
    SessionStarted,
    TextDelta,
    ToolUse,
)

__all__ = [
    "CancellationToken",
    "ClaudeCliEngine",
    "EngineEvent",
    "EngineOptions",
    "Error",
    "ReasoningEngine",
    "Result",
    "SessionStarted",
    "TextDelta",
    "ToolUse",
    "parse_stream_line",
]
