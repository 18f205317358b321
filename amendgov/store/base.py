"""BaseStore — the abstract document store behind all governance state.

Every collection holds JSON-safe dict records keyed by "id". Adapters
must provide atomic multi-entity writes through a re-entrant
`transaction()` so validate-then-write sequences cannot interleave.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

Record = dict[str, Any]


class StoreQuery(BaseModel):
    """Equality filters, an optional row predicate, ordering and a limit.

    A filter value that is a list or tuple matches any of its members.
    """

    model_config = {"arbitrary_types_allowed": True}

    filters: dict[str, Any] = Field(default_factory=dict)
    where: Callable[[Record], bool] | None = None
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value


def _matches(row: Record, filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        expected = _plain(expected)
        actual = row.get(key)
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def apply_query(rows: list[Record], query: StoreQuery | None) -> list[Record]:
    """Filter, order and limit rows in insertion order."""
    if query is None:
        return list(rows)
    out = [r for r in rows if _matches(r, query.filters)]
    if query.where is not None:
        out = [r for r in out if query.where(r)]
    if query.order_by:
        key = query.order_by
        # None sorts first ascending
        out.sort(
            key=lambda r: (r.get(key) is not None, r.get(key) if r.get(key) is not None else ""),
            reverse=query.descending,
        )
    if query.limit is not None:
        out = out[: query.limit]
    return out


class BaseStore(ABC):
    """Abstract interface for governance persistence."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the store (create schema, open connections)."""
        ...

    async def close(self) -> None:
        """Release connections. Default is a no-op."""

    @abstractmethod
    async def insert(self, collection: str, record: Record) -> Record:
        """Insert a new record. The record must carry an "id"."""
        ...

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Record | None:
        ...

    @abstractmethod
    async def update(self, collection: str, record_id: str, changes: Record) -> Record | None:
        """Merge changes into an existing record. Returns None if missing."""
        ...

    @abstractmethod
    async def query(self, collection: str, query: StoreQuery | None = None) -> list[Record]:
        ...

    async def count(self, collection: str, query: StoreQuery | None = None) -> int:
        return len(await self.query(collection, query))

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Atomic, re-entrant unit of work.

        Nested calls from the task that already holds the transaction
        join it. Any exception rolls back every write made inside.
        """
        ...
