"""Tests for runtime wiring and bootstrap."""

import pytest

from amendgov.config import GovSettings
from amendgov.runtime import Governance
from amendgov.store.sqlite import SqliteStore


@pytest.mark.asyncio
async def test_initialize_bootstraps_missing_agents(settings):
    gov = Governance.in_memory(settings)
    assert await gov.initialize() == settings.roles
    assert await gov.initialize() == []

    cfo = await gov.repository.get_agent("cfo")
    assert cfo.base_knowledge.startswith("Role: cfo")
    assert "standards" in cfo.standard_guidance
    await gov.close()


@pytest.mark.asyncio
async def test_settings_flow_into_components():
    settings = GovSettings(
        roles=["qa"], approval_mode="strict", evaluation_window=7, baking_threshold=4,
    )
    gov = Governance.in_memory(settings)
    assert gov.workflow.mode.value == "strict"
    assert gov.engine.evaluation_window == 7
    assert gov.baking.threshold == 4
    assert gov.detector.thresholds.min_tasks == settings.min_tasks_for_analysis


@pytest.mark.asyncio
async def test_sqlite_runtime_persists(tmp_path, draft):
    settings = GovSettings(db_path=tmp_path / "gov" / "amendgov.db", roles=["cfo"])

    gov = Governance.open(settings)
    assert isinstance(gov.store, SqliteStore)
    await gov.initialize()
    created = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).unwrap()
    await gov.close()

    reopened = Governance.open(settings)
    assert await reopened.initialize() == []
    amendment = (await reopened.engine.get_amendment(created.id)).unwrap()
    assert amendment.is_active
    assert (await reopened.repository.get_agent("cfo")).active_amendment_count == 1
    await reopened.close()


@pytest.mark.asyncio
async def test_status(gov, draft):
    gov.workflow.set_mode("strict")
    await gov.workflow.submit("cfo", draft())
    status = await gov.status()
    assert status["agents"] == 5
    assert status["pending_approvals"] == 1
    assert status["active_amendments"] == 0
    assert status["approval_mode"]["mode"] == "strict"
    assert status["monitor_health"] == "initializing"
    assert status["active_alerts"] == 0
