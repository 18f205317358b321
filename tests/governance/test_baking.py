"""Tests for baking proven amendments into standard knowledge."""

import pytest

from amendgov.governance.baking import AmendmentBaking
from amendgov.types import EvaluationStatus

MUTATION = {"category_guidance": {"expense_report": {"risk_level": "elevated"}}}


@pytest.fixture
def baking(gov):
    return AmendmentBaking(gov.repository, gov.knowledge, gov.event_bus, threshold=2)


async def _proven(gov, draft, trigger="task_category:expense_report"):
    amendment = (await gov.engine.create_amendment(
        "cfo", draft(trigger=trigger, knowledge_mutation=MUTATION), auto_approve=True,
    )).unwrap()
    for i in range(5):
        (await gov.engine.record_evaluation(amendment.id, f"{trigger}-{i}", {"success": True})).unwrap()
    return (await gov.engine.get_amendment(amendment.id)).unwrap()


@pytest.mark.asyncio
async def test_threshold_status(gov, baking, draft):
    status = (await baking.check_baking_threshold("cfo")).data
    assert not status.needs_baking
    assert status.current_count == 0

    await gov.engine.create_amendment("cfo", draft(), auto_approve=True)
    await gov.engine.create_amendment("cfo", draft(trigger="task_category:forecast"), auto_approve=True)
    status = (await baking.check_baking_threshold("cfo")).data
    assert status.needs_baking
    assert status.current_count == 2


@pytest.mark.asyncio
async def test_auto_bake_oldest_proven(gov, baking, draft):
    proven = await _proven(gov, draft)
    assert proven.evaluation_status == EvaluationStatus.PROVEN
    other = (await gov.engine.create_amendment(
        "cfo", draft(trigger="task_category:forecast"), auto_approve=True,
    )).unwrap()

    record = (await baking.run_auto_baking("cfo")).data
    assert record.amendment_id == proven.id
    assert record.previous_hash != record.new_hash

    baked = (await gov.engine.get_amendment(proven.id)).data
    assert baked.is_baked
    assert not baked.is_active
    assert baked.baked_at is not None

    agent = await gov.repository.get_agent("cfo")
    assert agent.active_amendment_count == 1
    assert agent.standard_guidance["category_guidance"] == MUTATION["category_guidance"]
    assert agent.standard_guidance["permanent_instructions"][0]["trigger_pattern"] == proven.trigger_pattern

    knowledge = (await gov.knowledge.get_effective_knowledge("cfo")).data.knowledge
    assert knowledge.amendments_applied == [other.id]
    assert gov.event_bus.history("amendment.baked")


@pytest.mark.asyncio
async def test_no_bake_below_threshold(gov, baking, draft):
    await _proven(gov, draft)
    assert (await baking.run_auto_baking("cfo")).data is None


@pytest.mark.asyncio
async def test_no_bake_without_eligible_candidate(gov, baking, draft):
    await gov.engine.create_amendment("cfo", draft(), auto_approve=True)
    await gov.engine.create_amendment("cfo", draft(trigger="task_category:forecast"), auto_approve=True)
    assert (await baking.select_amendment_for_baking("cfo")).data is None
    assert (await baking.run_auto_baking("cfo")).data is None


@pytest.mark.asyncio
async def test_bake_ineligible_amendment(gov, baking, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).unwrap()
    result = await baking.bake_amendment(amendment.id)
    assert result.error.kind == "invalid_transition"


@pytest.mark.asyncio
async def test_baked_queries(gov, baking, draft):
    proven = await _proven(gov, draft)
    (await baking.bake_amendment(proven.id)).unwrap()

    baked = (await baking.get_baked_amendments("cfo")).data
    assert [a.id for a in baked] == [proven.id]
    stats = (await baking.get_baking_stats()).data
    assert stats == {"total_baked": 1, "by_agent": {"cfo": 1}, "threshold": 2}

    again = await baking.bake_amendment(proven.id)
    assert again.error.kind == "invalid_transition"


@pytest.mark.asyncio
async def test_global_baking_check(gov, baking, draft):
    await _proven(gov, draft)
    await gov.engine.create_amendment("cfo", draft(trigger="task_category:forecast"), auto_approve=True)
    records = (await baking.run_global_baking_check()).data
    assert [r.agent_role for r in records] == ["cfo"]
