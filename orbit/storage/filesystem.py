"""Directory-as-database backend: one JSON file per record.

Writes go to a temp file in the target directory and are swapped in with
os.replace, so a reader never observes a half-written record. Logs are
newline-delimited JSON, flushed and fsynced per append. Blocking file I/O
runs in worker threads via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Generic

from pydantic import ValidationError

from orbit.storage.records import FLAT_LAYOUT, M, Scope, validate_key

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line + "\n")
        fh.flush()
        os.fsync(fh.fileno())


def _list_dir(path: Path, *, dirs: bool) -> list[str]:
    try:
        entries = list(os.scandir(path))
    except FileNotFoundError:
        return []
    return sorted(
        e.name for e in entries
        if not e.name.startswith(".") and e.is_dir() == dirs
    )


class FileRecordStore(Generic[M]):
    """RecordStore over a directory. ``layout`` maps a key to a relative path."""

    def __init__(self, root: Path, model: type[M], layout: str = FLAT_LAYOUT) -> None:
        if not layout.startswith("{key}"):
            raise ValueError(f"Layout must start with '{{key}}': {layout!r}")
        self._root = root
        self._model = model
        self._layout = layout
        self._suffix = layout[len("{key}"):]
        # "{key}/session.json" keeps one directory per record
        self._nested = "/" in self._suffix

    @property
    def root(self) -> Path:
        return self._root

    def path(self, key: str) -> Path:
        return self._root / self._layout.format(key=validate_key(key))

    async def get(self, key: str) -> M | None:
        text = await asyncio.to_thread(_read_text, self.path(key))
        if text is None:
            return None
        return self._model.model_validate_json(text)

    async def put(self, key: str, record: M) -> None:
        await asyncio.to_thread(_atomic_write, self.path(key), record.model_dump_json(indent=2))

    async def list(self) -> list[M]:
        return await asyncio.to_thread(self._list_sync)

    def _list_sync(self) -> list[M]:
        if self._nested:
            keys = _list_dir(self._root, dirs=True)
        else:
            keys = [
                name[: -len(self._suffix)]
                for name in _list_dir(self._root, dirs=False)
                if name.endswith(self._suffix)
            ]

        records: list[M] = []
        for key in keys:
            path = self._root / self._layout.format(key=key)
            text = _read_text(path)
            if text is None:
                continue
            try:
                records.append(self._model.model_validate_json(text))
            except ValidationError:
                logger.warning("Skipping unreadable record %s", path)
        return records

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    def _delete_sync(self, key: str) -> bool:
        path = self.path(key)
        if self._nested:
            record_dir = self._root / validate_key(key)
            if not path.exists():
                return False
            shutil.rmtree(record_dir)
            return True
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


class FileRecordLog(Generic[M]):
    """Append-only JSONL file."""

    def __init__(self, path: Path, model: type[M]) -> None:
        self._path = path
        self._model = model

    async def append(self, entry: M) -> None:
        await asyncio.to_thread(_append_line, self._path, entry.model_dump_json())

    async def read(self) -> list[M]:
        text = await asyncio.to_thread(_read_text, self._path)
        if not text:
            return []
        entries: list[M] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(self._model.model_validate_json(line))
            except ValidationError:
                # A torn final line after a crash mid-append
                logger.warning("Skipping unreadable line %d in %s", lineno, self._path)
        return entries


class FileBackend:
    """StorageBackend rooted at a base directory."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path)

    def path_for(self, scope: Scope) -> Path:
        return self.base_path.joinpath(*(validate_key(s) for s in scope))

    def records(self, scope: Scope, model: type[M], layout: str = FLAT_LAYOUT) -> FileRecordStore[M]:
        return FileRecordStore(self.path_for(scope), model, layout)

    def log(self, scope: Scope, model: type[M], filename: str) -> FileRecordLog[M]:
        return FileRecordLog(self.path_for(scope) / validate_key(filename), model)

    async def children(self, scope: Scope) -> list[str]:
        return await asyncio.to_thread(_list_dir, self.path_for(scope), dirs=True)

    async def drop(self, scope: Scope) -> None:
        await asyncio.to_thread(shutil.rmtree, self.path_for(scope), True)

    async def close(self) -> None:
        pass
