"""Tests for the in-memory store and the shared query semantics."""

import asyncio

import pytest

from amendgov.exceptions import StoreUnavailableError
from amendgov.store.base import StoreQuery, apply_query
from amendgov.store.memory import InMemoryStore
from amendgov.types import EvaluationStatus


@pytest.mark.asyncio
async def test_insert_get_update():
    store = InMemoryStore()
    await store.insert("amendments", {"id": "a1", "agent_role": "cfo", "is_active": False})

    row = await store.get("amendments", "a1")
    assert row["agent_role"] == "cfo"

    updated = await store.update("amendments", "a1", {"is_active": True})
    assert updated["is_active"] is True
    assert updated["agent_role"] == "cfo"
    assert await store.update("amendments", "missing", {"x": 1}) is None


@pytest.mark.asyncio
async def test_duplicate_insert_rejected():
    store = InMemoryStore()
    await store.insert("agents", {"id": "cfo"})
    with pytest.raises(ValueError):
        await store.insert("agents", {"id": "cfo"})


@pytest.mark.asyncio
async def test_returned_rows_are_copies():
    store = InMemoryStore()
    await store.insert("agents", {"id": "cfo", "tags": ["a"]})
    row = await store.get("agents", "cfo")
    row["tags"].append("b")
    assert (await store.get("agents", "cfo"))["tags"] == ["a"]


@pytest.mark.asyncio
async def test_query_filters_order_and_limit():
    store = InMemoryStore()
    for i, status in enumerate(["evaluating", "proven", "evaluating", "failed"]):
        await store.insert("amendments", {
            "id": f"a{i}", "evaluation_status": status, "created_at": f"2026-01-0{i + 1}",
        })

    evaluating = await store.query("amendments", StoreQuery(
        filters={"evaluation_status": EvaluationStatus.EVALUATING},
    ))
    assert [r["id"] for r in evaluating] == ["a0", "a2"]

    finished = await store.query("amendments", StoreQuery(
        filters={"evaluation_status": [EvaluationStatus.PROVEN, EvaluationStatus.FAILED]},
        order_by="created_at", descending=True, limit=1,
    ))
    assert [r["id"] for r in finished] == ["a3"]
    assert await store.count("amendments") == 4


def test_apply_query_where_predicate():
    rows = [{"id": "a", "n": 1}, {"id": "b", "n": 5}, {"id": "c", "n": None}]
    out = apply_query(rows, StoreQuery(where=lambda r: (r["n"] or 0) > 2))
    assert [r["id"] for r in out] == ["b"]

    ordered = apply_query(rows, StoreQuery(order_by="n"))
    assert [r["id"] for r in ordered] == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error():
    store = InMemoryStore()
    await store.insert("agents", {"id": "cfo", "count": 0})

    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.update("agents", "cfo", {"count": 1})
            await store.insert("agents", {"id": "cto"})
            raise RuntimeError("boom")

    assert (await store.get("agents", "cfo"))["count"] == 0
    assert await store.get("agents", "cto") is None


@pytest.mark.asyncio
async def test_transaction_is_reentrant():
    store = InMemoryStore()
    async with store.transaction():
        async with store.transaction():
            await store.insert("agents", {"id": "cfo"})
        await store.insert("agents", {"id": "cto"})
    assert await store.count("agents") == 2


@pytest.mark.asyncio
async def test_lock_timeout_surfaces_as_store_unavailable():
    store = InMemoryStore(lock_timeout=0.05)
    held = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with store.transaction():
            held.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await held.wait()
    with pytest.raises(StoreUnavailableError):
        await store.insert("agents", {"id": "cfo"})
    release.set()
    await task


@pytest.mark.asyncio
async def test_other_tasks_read_committed_state():
    store = InMemoryStore()
    await store.insert("agents", {"id": "cfo", "count": 0})
    written = asyncio.Event()
    release = asyncio.Event()

    async def writer():
        async with store.transaction():
            await store.update("agents", "cfo", {"count": 1})
            await store.insert("agents", {"id": "cto"})
            assert (await store.get("agents", "cfo"))["count"] == 1
            written.set()
            await release.wait()
            raise RuntimeError("boom")

    task = asyncio.create_task(writer())
    await written.wait()
    assert (await store.get("agents", "cfo"))["count"] == 0
    assert await store.get("agents", "cto") is None
    assert [r["id"] for r in await store.query("agents")] == ["cfo"]

    release.set()
    with pytest.raises(RuntimeError):
        await task
    assert (await store.get("agents", "cfo"))["count"] == 0
    assert await store.count("agents") == 1


@pytest.mark.asyncio
async def test_commit_becomes_visible_to_other_tasks():
    store = InMemoryStore()
    written = asyncio.Event()
    release = asyncio.Event()

    async def writer():
        async with store.transaction():
            await store.insert("agents", {"id": "cfo"})
            written.set()
            await release.wait()

    task = asyncio.create_task(writer())
    await written.wait()
    assert await store.get("agents", "cfo") is None
    release.set()
    await task
    assert await store.get("agents", "cfo") == {"id": "cfo"}
