"""Settings via pydantic-settings with ORBIT_ env prefix.

A single Settings instance is built at process start and passed to every
component; nothing reads the environment on its own.
"""

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ORBIT_", env_file=".env", extra="ignore")

    # Storage
    base_path: Path = Path.home() / ".config" / "orbit"
    storage_backend: Literal["file", "sqlite"] = "file"
    db_path: Path | None = None  # defaults to <base_path>/orbit.db
    log_level: str = "info"

    # Engine
    model: str = "claude-sonnet-4-5-20250929"
    engine_command: str = "claude"
    engine_max_turns: int = 50

    # Agent pool (seconds)
    pool_idle_timeout: float = 600.0
    pool_check_interval: float | None = None  # defaults to half the idle timeout

    # Scheduler driver (seconds)
    scheduler_poll_interval: float = 30.0

    # Memory subsystem
    memory_enabled: bool = True
    memory_command: str = "qmd"

    # Context composition
    context_max_file_chars: int = 50_000
    context_history_messages: int = 20

    @field_validator(
        "engine_max_turns",
        "pool_idle_timeout",
        "scheduler_poll_interval",
        "context_max_file_chars",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _validate_pool(self) -> "Settings":
        if self.pool_check_interval is not None:
            if self.pool_check_interval <= 0:
                raise ValueError("pool_check_interval must be positive")
            if self.pool_check_interval > self.pool_idle_timeout:
                raise ValueError(
                    f"pool_check_interval ({self.pool_check_interval}) must not exceed "
                    f"pool_idle_timeout ({self.pool_idle_timeout})"
                )
        return self

    @property
    def agents_path(self) -> Path:
        return self.base_path / "agents"

    @property
    def eviction_interval(self) -> float:
        return self.pool_check_interval or self.pool_idle_timeout / 2

    @property
    def db_url(self) -> str:
        path = self.db_path or self.base_path / "orbit.db"
        return f"sqlite+aiosqlite:///{path}"
