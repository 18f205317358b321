"""Tests for the SQLite adapter and its migrations."""

import asyncio
import tempfile
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from amendgov.migrations.runner import apply_migrations, get_schema_version
from amendgov.store.base import StoreQuery
from amendgov.store.sqlite import SqliteStore


@pytest_asyncio.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmp:
        s = SqliteStore(Path(tmp) / "gov.db")
        await s.initialize()
        yield s
        await s.close()


@pytest.mark.asyncio
async def test_migrations_create_documents_table():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = str(Path(tmp) / "m.db")
        applied = await apply_migrations(db_path)
        assert applied == [1]
        # Second run is a no-op
        assert await apply_migrations(db_path) == []

        async with aiosqlite.connect(db_path) as db:
            assert await get_schema_version(db) == 1
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='documents'"
            )
            assert await cursor.fetchone() is not None


@pytest.mark.asyncio
async def test_round_trip_and_update(store):
    await store.insert("agents", {"id": "cfo", "performance": {"success_rate": 0.5}})
    await store.update("agents", "cfo", {"active_amendment_count": 2})

    row = await store.get("agents", "cfo")
    assert row["performance"] == {"success_rate": 0.5}
    assert row["active_amendment_count"] == 2
    assert await store.get("agents", "nobody") is None


@pytest.mark.asyncio
async def test_duplicate_insert_rejected(store):
    await store.insert("agents", {"id": "cfo"})
    with pytest.raises(ValueError):
        await store.insert("agents", {"id": "cfo"})


@pytest.mark.asyncio
async def test_query_keeps_insertion_order(store):
    for rid in ("b", "a", "c"):
        await store.insert("evaluations", {"id": rid, "amendment_id": "x"})
    await store.insert("evaluations", {"id": "z", "amendment_id": "y"})

    rows = await store.query("evaluations", StoreQuery(filters={"amendment_id": "x"}))
    assert [r["id"] for r in rows] == ["b", "a", "c"]


@pytest.mark.asyncio
async def test_transaction_rollback(store):
    await store.insert("agents", {"id": "cfo", "n": 0})
    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.update("agents", "cfo", {"n": 1})
            await store.insert("agents", {"id": "cto"})
            raise RuntimeError("boom")

    assert (await store.get("agents", "cfo"))["n"] == 0
    assert await store.get("agents", "cto") is None

    # Store still usable after rollback
    async with store.transaction():
        await store.insert("agents", {"id": "cto"})
    assert await store.count("agents") == 2


@pytest.mark.asyncio
async def test_reopen_keeps_data():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "gov.db"
        first = SqliteStore(path)
        await first.initialize()
        await first.insert("agents", {"id": "cfo"})
        await first.close()

        second = SqliteStore(path)
        await second.initialize()
        await second.insert("agents", {"id": "cto"})
        rows = await second.query("agents")
        assert [r["id"] for r in rows] == ["cfo", "cto"]
        await second.close()


@pytest.mark.asyncio
async def test_in_memory_database():
    s = SqliteStore(":memory:")
    await s.initialize()
    await s.insert("agents", {"id": "cfo"})
    assert await s.get("agents", "cfo") == {"id": "cfo"}
    await s.close()


@pytest.mark.asyncio
async def test_other_tasks_read_committed_state(store):
    await store.insert("agents", {"id": "cfo", "n": 0})
    written = asyncio.Event()
    release = asyncio.Event()

    async def writer():
        async with store.transaction():
            await store.update("agents", "cfo", {"n": 1})
            await store.insert("agents", {"id": "cto"})
            assert (await store.get("agents", "cfo"))["n"] == 1
            written.set()
            await release.wait()

    task = asyncio.create_task(writer())
    await written.wait()
    assert (await store.get("agents", "cfo"))["n"] == 0
    assert [r["id"] for r in await store.query("agents")] == ["cfo"]

    release.set()
    await task
    assert (await store.get("agents", "cfo"))["n"] == 1
    assert await store.count("agents") == 2
