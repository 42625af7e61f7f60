"""Async database engine, session management and the SQL record backend."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Generic

from pydantic import ValidationError
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orbit.config import Settings
from orbit.storage.models import Base, LogEntry, Record
from orbit.storage.records import FLAT_LAYOUT, M, Scope, validate_key

logger = logging.getLogger(__name__)


def _scope_str(scope: Scope) -> str:
    return "/".join(validate_key(s) for s in scope)


class Database:
    def __init__(self, settings: Settings) -> None:
        self._db_file = settings.db_path or settings.base_path / "orbit.db"
        self.engine = create_async_engine(
            settings.db_url,
            echo=settings.log_level == "debug",
        )
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Create the database file and tables if missing."""
        self._db_file.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database ready at %s", self._db_file)

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()


class SqlRecordStore(Generic[M]):
    """RecordStore over the records table. The layout is irrelevant here."""

    def __init__(self, database: Database, scope: str, model: type[M]) -> None:
        self._db = database
        self._scope = scope
        self._model = model

    async def get(self, key: str) -> M | None:
        async with self._db.session() as session:
            row = await session.get(Record, (self._scope, validate_key(key)))
            if row is None:
                return None
            return self._model.model_validate_json(row.data)

    async def put(self, key: str, record: M) -> None:
        async with self._db.session() as session:
            await session.merge(
                Record(scope=self._scope, key=validate_key(key), data=record.model_dump_json())
            )
            await session.commit()

    async def list(self) -> list[M]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Record).where(Record.scope == self._scope).order_by(Record.key)
            )
            records: list[M] = []
            for row in result.scalars().all():
                try:
                    records.append(self._model.model_validate_json(row.data))
                except ValidationError:
                    logger.warning("Skipping unreadable record %s/%s", self._scope, row.key)
            return records

    async def delete(self, key: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(Record)
                .where(Record.scope == self._scope)
                .where(Record.key == validate_key(key))
            )
            await session.commit()
            return result.rowcount > 0


class SqlRecordLog(Generic[M]):
    """RecordLog over the log_entries table, ordered by insertion id."""

    def __init__(self, database: Database, scope: str, model: type[M]) -> None:
        self._db = database
        self._scope = scope
        self._model = model

    async def append(self, entry: M) -> None:
        async with self._db.session() as session:
            session.add(LogEntry(scope=self._scope, data=entry.model_dump_json()))
            await session.commit()

    async def read(self) -> list[M]:
        async with self._db.session() as session:
            result = await session.execute(
                select(LogEntry.data).where(LogEntry.scope == self._scope).order_by(LogEntry.id)
            )
            return [self._model.model_validate_json(data) for data in result.scalars().all()]


class SqlBackend:
    """StorageBackend on the embedded relational database."""

    def __init__(self, database: Database) -> None:
        self.db = database

    def records(self, scope: Scope, model: type[M], layout: str = FLAT_LAYOUT) -> SqlRecordStore[M]:
        return SqlRecordStore(self.db, _scope_str(scope), model)

    def log(self, scope: Scope, model: type[M], filename: str) -> SqlRecordLog[M]:
        return SqlRecordLog(self.db, _scope_str(scope + (filename,)), model)

    async def children(self, scope: Scope) -> list[str]:
        """Names of nested records and sub-scopes directly under ``scope``."""
        base = _scope_str(scope)
        prefix = base + "/"
        names: set[str] = set()
        async with self.db.session() as session:
            keys = await session.execute(select(Record.key).where(Record.scope == base))
            names.update(keys.scalars().all())
            for column in (Record.scope, LogEntry.scope):
                result = await session.execute(
                    select(column).where(column.startswith(prefix, autoescape=True)).distinct()
                )
                for value in result.scalars().all():
                    names.add(value[len(prefix):].split("/", 1)[0])
        return sorted(names)

    async def drop(self, scope: Scope) -> None:
        """Delete the record named by ``scope`` and everything beneath it."""
        base = _scope_str(scope)
        prefix = base + "/"
        conditions = [Record.scope == base, Record.scope.startswith(prefix, autoescape=True)]
        if len(scope) > 1:
            conditions.append(
                and_(Record.scope == _scope_str(scope[:-1]), Record.key == scope[-1])
            )
        async with self.db.session() as session:
            await session.execute(delete(Record).where(or_(*conditions)))
            await session.execute(
                delete(LogEntry).where(LogEntry.scope.startswith(prefix, autoescape=True))
            )
            await session.commit()

    async def close(self) -> None:
        await self.db.disconnect()
