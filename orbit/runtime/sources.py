"""Per-agent external tool sources.

Each source is a directory ``agents/<name>/sources/<source>/`` holding a
``config.json``:

    {"type": "mcp", "transport": "stdio", "command": "npx", "args": [...], "env": {...}}
    {"type": "mcp", "transport": "http", "url": "https://...", "headers": {...}}

Entries that fail validation are logged and skipped so one broken source
never blocks a turn.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class StdioSource(BaseModel):
    type: Literal["mcp"] = "mcp"
    transport: Literal["stdio"]
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    def descriptor(self) -> dict[str, Any]:
        return {"type": "stdio", "command": self.command, "args": self.args, "env": self.env}


class HttpSource(BaseModel):
    type: Literal["mcp"] = "mcp"
    transport: Literal["http", "sse"]
    url: str
    headers: dict[str, str] = Field(default_factory=dict)

    def descriptor(self) -> dict[str, Any]:
        return {"type": self.transport, "url": self.url, "headers": self.headers}


SourceConfig = Annotated[Union[StdioSource, HttpSource], Field(discriminator="transport")]

_source_adapter: TypeAdapter[SourceConfig] = TypeAdapter(SourceConfig)


def parse_source(raw: dict[str, Any]) -> StdioSource | HttpSource:
    return _source_adapter.validate_python(raw)


def load_sources(sources_dir: Path) -> dict[str, dict[str, Any]]:
    """Map source name -> connection descriptor for every valid source."""
    if not sources_dir.is_dir():
        return {}

    servers: dict[str, dict[str, Any]] = {}
    for entry in sorted(sources_dir.iterdir()):
        config_path = entry / "config.json"
        if not entry.is_dir() or not config_path.is_file():
            continue
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
            source = parse_source(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Skipping invalid tool source %s: %s", config_path, exc)
            continue
        servers[entry.name] = source.descriptor()
    return servers
