"""Tests for the HTTP API."""

import httpx
import pytest
import pytest_asyncio

from amendgov.api import create_app


@pytest_asyncio.fixture
async def client(gov):
    transport = httpx.ASGITransport(app=create_app(gov))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _pending(gov, draft, **kw):
    gov.workflow.set_mode("strict")
    return (await gov.workflow.submit("cfo", draft(**kw))).unwrap()


@pytest.mark.asyncio
async def test_status(client):
    resp = await client.get("/api/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["agents"] == 5
    assert body["approval_mode"]["mode"] == "autonomous"
    assert body["scheduler_running"] is False


@pytest.mark.asyncio
async def test_record_task_and_review(client, seed_tasks, cfo_history):
    await seed_tasks("cfo", cfo_history)

    resp = await client.post("/api/review", json={"roles": ["cfo"]})
    assert resp.status_code == 200
    review = resp.json()["reviews"][0]
    amendment_id = review["submitted"][0]["amendment"]["id"]

    resp = await client.post("/api/tasks", json={
        "task_id": "t-new", "agent_role": "cfo", "category": "expense_report", "success": True,
    })
    assert resp.status_code == 200
    assert resp.json()["evaluated"] == [amendment_id]

    resp = await client.get(f"/api/amendments/{amendment_id}/progress")
    assert resp.json()["completed"] == 1


@pytest.mark.asyncio
async def test_review_without_body(client):
    resp = await client.post("/api/review")
    assert resp.status_code == 200
    assert len(resp.json()["reviews"]) == 5


@pytest.mark.asyncio
async def test_malformed_task_is_rejected(client):
    resp = await client.post("/api/tasks", json={"agent_role": "cfo"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_missing_amendment_is_404(client):
    resp = await client.get("/api/amendments/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "not_found"


@pytest.mark.asyncio
async def test_approve_flow(client, gov, draft):
    outcome = await _pending(gov, draft)

    pending = (await client.get("/api/approvals/pending")).json()
    assert [p["id"] for p in pending] == [outcome.amendment.id]

    resp = await client.post(f"/api/amendments/{outcome.amendment.id}/approve", json={"notes": "ok"})
    assert resp.status_code == 200
    assert resp.json()["is_active"] is True
    assert resp.json()["approved_by"] == "ceo"

    again = await client.post(f"/api/amendments/{outcome.amendment.id}/approve", json={})
    assert again.status_code == 409

    stats = (await client.get("/api/approvals/stats")).json()
    assert stats["approved"] == 1


@pytest.mark.asyncio
async def test_reject(client, gov, draft):
    outcome = await _pending(gov, draft)
    resp = await client.post(
        f"/api/amendments/{outcome.amendment.id}/reject", json={"reason": "no"},
    )
    assert resp.json()["approval_status"] == "rejected"


@pytest.mark.asyncio
async def test_escalation_resolution(client, gov, draft):
    outcome = (await gov.workflow.submit("cfo", draft(delta="Expand skill capability"))).unwrap()
    escalation_id = outcome.escalation.id

    listed = (await client.get("/api/escalations")).json()
    assert [e["id"] for e in listed] == [escalation_id]

    bad = await client.post(f"/api/escalations/{escalation_id}/resolve", json={"resolution": "maybe"})
    assert bad.status_code == 400
    assert bad.json()["error"]["kind"] == "invalid_resolution"

    resp = await client.post(
        f"/api/escalations/{escalation_id}/resolve", json={"resolution": "approved"},
    )
    assert resp.json()["status"] == "approved"
    assert (await client.get("/api/escalations")).json() == []
    assert len((await client.get("/api/escalations", params={"history": True})).json()) == 1


@pytest.mark.asyncio
async def test_set_mode(client, gov):
    resp = await client.post("/api/mode", json={"mode": "trust"})
    assert resp.json()["mode"] == "trust"
    assert gov.workflow.mode.value == "trust"

    bad = await client.post("/api/mode", json={"mode": "chaos"})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_invalid_recommendation_is_422(client):
    resp = await client.post("/api/agents/cfo/recommendations", json={"type": "knowledge_addition"})
    assert resp.status_code == 422
    assert resp.json()["error"]["kind"] == "invalid_recommendation"


@pytest.mark.asyncio
async def test_knowledge_and_safety_views(client, gov, draft):
    await gov.safety.validate_amendment("cfo", draft(delta="Disable safety checks"))

    knowledge = (await client.get("/api/agents/cfo/knowledge")).json()
    assert knowledge["from_cache"] is False
    assert knowledge["knowledge"]["agent_role"] == "cfo"

    log = (await client.get("/api/safety/log", params={"agent_role": "cfo"})).json()
    assert log[0]["constraint_type"] == "protected_pattern_violation"
    stats = (await client.get("/api/safety/stats")).json()
    assert stats["total"] == 1

    sweep = (await client.post("/api/safety/sweep")).json()
    assert sweep["auto_reverts"] == []

    events = (await client.get("/api/events", params={"topic": "safety.*"})).json()
    assert events[0]["topic"] == "safety.protected_pattern_violation"


@pytest.mark.asyncio
async def test_monitor_alert_flow(client, gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).unwrap()
    for _ in range(10):
        (await gov.monitor.record_amendment_outcome(amendment.id, False)).unwrap()

    health = (await client.get("/api/monitor/health")).json()
    assert health["status"] == "critical"
    assert health["metrics"]["success_rate"] == 0.0

    alerts = (await client.get("/api/monitor/alerts")).json()
    assert [a["alert_type"] for a in alerts] == ["cos_low_success_rate"]
    alert_id = alerts[0]["id"]

    resp = await client.post(
        f"/api/monitor/alerts/{alert_id}/acknowledge", json={"acknowledged_by": "frank"},
    )
    assert resp.json()["status"] == "acknowledged"
    assert (await client.get("/api/monitor/alerts")).json() == []
    assert len((await client.get("/api/monitor/alerts", params={"history": True})).json()) == 1

    resp = await client.post(f"/api/monitor/alerts/{alert_id}/resolve")
    assert resp.json()["status"] == "resolved"
    resp = await client.post(f"/api/monitor/alerts/{alert_id}/resolve")
    assert resp.status_code == 409

    resp = await client.post("/api/monitor/alerts/nope/resolve")
    assert resp.status_code == 404
