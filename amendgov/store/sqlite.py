"""SqliteStore — durable adapter over aiosqlite connections.

Records are stored as JSON documents in one table, keyed by
(collection, id). The write connection runs in autocommit mode;
transactions issue explicit BEGIN IMMEDIATE / COMMIT / ROLLBACK.

File databases run in WAL mode with a second connection for reads from
tasks outside the open transaction, so they only see committed rows.
An in-memory database cannot be shared between connections and serves
every read from the write connection.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
import orjson

from amendgov.exceptions import StoreUnavailableError
from amendgov.migrations import m_001_initial
from amendgov.migrations.runner import apply_migrations
from amendgov.store.base import BaseStore, Record, StoreQuery, apply_query

logger = logging.getLogger(__name__)


class SqliteStore(BaseStore):
    def __init__(self, db_path: str | Path, lock_timeout: float = 5.0) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._lock_timeout = lock_timeout
        self._seq = 0

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            applied = await apply_migrations(self._db_path)
            if applied:
                logger.info("SQLite store migrated to version %d", applied[-1])
            self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
            if self._db_path == ":memory:":
                # Migrations ran on a different in-memory database
                await m_001_initial.upgrade(self._db)
            else:
                await self._db.execute("PRAGMA journal_mode=WAL")
                self._reader = await aiosqlite.connect(self._db_path, isolation_level=None)
            cursor = await self._db.execute("SELECT COALESCE(MAX(seq), 0) FROM documents")
            row = await cursor.fetchone()
            self._seq = row[0]
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open store at {self._db_path}: {e}") from e

    async def close(self) -> None:
        if self._reader is not None:
            await self._reader.close()
            self._reader = None
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreUnavailableError("SQLite store is not initialized")
        return self._db

    def _owns_lock(self) -> bool:
        return self._owner is not None and self._owner is asyncio.current_task()

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[bool]:
        if self._owns_lock():
            yield False
            return
        try:
            await asyncio.wait_for(self._lock.acquire(), self._lock_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Timed out after {self._lock_timeout}s waiting for store lock"
            ) from e
        self._owner = asyncio.current_task()
        try:
            yield True
        finally:
            self._owner = None
            self._lock.release()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._exclusive() as outermost:
            if not outermost:
                yield
                return
            seq = self._seq
            await self._execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                self._seq = seq
                await self._execute("ROLLBACK")
                raise
            await self._execute("COMMIT")

    async def _execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        try:
            return await self.db.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"SQLite error: {e}") from e

    async def _read(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self.db if self._reader is None or self._owns_lock() else self._reader
        try:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"SQLite error: {e}") from e

    async def insert(self, collection: str, record: Record) -> Record:
        async with self._exclusive():
            self._seq += 1
            try:
                await self._execute(
                    "INSERT INTO documents (collection, id, body, seq) VALUES (?, ?, ?, ?)",
                    (collection, record["id"], orjson.dumps(record).decode(), self._seq),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Duplicate id {record['id']} in {collection}") from e
        return dict(record)

    async def get(self, collection: str, record_id: str) -> Record | None:
        rows = await self._read(
            "SELECT body FROM documents WHERE collection = ? AND id = ?",
            (collection, record_id),
        )
        return orjson.loads(rows[0][0]) if rows else None

    async def update(self, collection: str, record_id: str, changes: Record) -> Record | None:
        async with self._exclusive():
            current = await self.get(collection, record_id)
            if current is None:
                return None
            current.update(changes)
            await self._execute(
                "UPDATE documents SET body = ? WHERE collection = ? AND id = ?",
                (orjson.dumps(current).decode(), collection, record_id),
            )
            return current

    async def query(self, collection: str, query: StoreQuery | None = None) -> list[Record]:
        rows = [
            orjson.loads(r[0])
            for r in await self._read(
                "SELECT body FROM documents WHERE collection = ? ORDER BY seq",
                (collection,),
            )
        ]
        return apply_query(rows, query)

    def __repr__(self) -> str:
        return f"SqliteStore({self._db_path!r})"
