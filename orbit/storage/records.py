"""Record storage interface shared by the file and SQL backends.

Every per-agent store (tasks, inbox, sessions, directory) talks to a
RecordStore or RecordLog obtained from a StorageBackend, so the same store
logic runs unchanged on either backend.

A scope is a tuple of path segments, e.g. ("agents", "bot-a", "tasks").
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Protocol, TypeVar

from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)

Scope = tuple[str, ...]

# Default layout: one <key>.json file per record directly under the scope
FLAT_LAYOUT = "{key}.json"


class RecordStore(Protocol[M]):
    """Keyed collection of pydantic records."""

    async def get(self, key: str) -> M | None: ...

    async def put(self, key: str, record: M) -> None: ...

    async def list(self) -> list[M]: ...

    async def delete(self, key: str) -> bool: ...


class RecordLog(Protocol[M]):
    """Append-only ordered log of pydantic records."""

    async def append(self, entry: M) -> None: ...

    async def read(self) -> list[M]: ...


class StorageBackend(Protocol):
    """Factory for scoped stores plus scope-level housekeeping."""

    def records(
        self, scope: Scope, model: type[M], layout: str = FLAT_LAYOUT
    ) -> RecordStore[M]: ...

    def log(self, scope: Scope, model: type[M], filename: str) -> RecordLog[M]: ...

    async def children(self, scope: Scope) -> list[str]: ...

    async def drop(self, scope: Scope) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Record ids
# ---------------------------------------------------------------------------

_id_lock = threading.Lock()
_last_ns = 0


def new_record_id() -> str:
    """Time-ordered id, strictly increasing within this process.

    Format: <epoch-ns, zero padded>-<6 hex chars>. Lexicographic order of ids
    matches creation order even when wall-clock timestamps tie.
    """
    global _last_ns
    with _id_lock:
        now = time.time_ns()
        if now <= _last_ns:
            now = _last_ns + 1
        _last_ns = now
    return f"{now:020d}-{uuid.uuid4().hex[:6]}"


def validate_key(key: str) -> str:
    """Reject keys that are not a single safe path segment."""
    if not key or key in (".", "..") or "/" in key or "\\" in key or "\x00" in key:
        raise ValueError(f"Invalid record key: {key!r}")
    return key
