"""InMemoryStore — dict-backed adapter for tests and ephemeral runs."""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator

from amendgov.exceptions import StoreUnavailableError
from amendgov.store.base import BaseStore, Record, StoreQuery, apply_query


class InMemoryStore(BaseStore):
    """Process-local store. Transactions snapshot and restore on error.

    While a transaction is open, reads from other tasks see the snapshot
    taken when it began, never its uncommitted writes.
    """

    def __init__(self, lock_timeout: float = 5.0) -> None:
        self._data: dict[str, dict[str, Record]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._committed: dict[str, dict[str, Record]] | None = None
        self._lock_timeout = lock_timeout

    async def initialize(self) -> None:
        pass

    def _owns_lock(self) -> bool:
        return self._owner is not None and self._owner is asyncio.current_task()

    def _visible(self) -> dict[str, dict[str, Record]]:
        if self._committed is not None and not self._owns_lock():
            return self._committed
        return self._data

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[bool]:
        """Hold the write lock unless this task already owns it."""
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
            snapshot = copy.deepcopy(self._data)
            self._committed = snapshot
            try:
                yield
            except BaseException:
                self._data = snapshot
                raise
            finally:
                self._committed = None

    async def insert(self, collection: str, record: Record) -> Record:
        async with self._exclusive():
            table = self._data[collection]
            if record["id"] in table:
                raise ValueError(f"Duplicate id {record['id']} in {collection}")
            table[record["id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get(self, collection: str, record_id: str) -> Record | None:
        row = self._visible().get(collection, {}).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def update(self, collection: str, record_id: str, changes: Record) -> Record | None:
        async with self._exclusive():
            row = self._data[collection].get(record_id)
            if row is None:
                return None
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)

    async def query(self, collection: str, query: StoreQuery | None = None) -> list[Record]:
        rows = apply_query(list(self._visible().get(collection, {}).values()), query)
        return copy.deepcopy(rows)

    def __repr__(self) -> str:
        sizes = {k: len(v) for k, v in self._data.items()}
        return f"InMemoryStore({sizes})"
