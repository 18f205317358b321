"""Tests for amendment generation, creation, versioning and evaluation."""

import asyncio

import pytest

from amendgov.exceptions import MalformedPatternError, UnknownPatternTypeError
from amendgov.governance.engine import AMENDMENT_TEMPLATES, generate_amendment
from amendgov.types import (
    AmendmentFocus,
    AmendmentType,
    ApprovalStatus,
    ConstraintType,
    EvaluationStatus,
    Pattern,
    PatternType,
)

PATTERN_DATA = {
    PatternType.REPEATED_FAILURE: {
        "primary_category": "expense_report",
        "common_reasons": ["missing receipts"],
    },
    PatternType.TIME_REGRESSION: {
        "slowest_category": "deploy", "recent_avg_seconds": 300, "baseline_avg_seconds": 100,
    },
    PatternType.QUALITY_DECLINE: {"recent_avg_quality": 0.5, "baseline_avg_quality": 0.9},
    PatternType.CATEGORY_WEAKNESS: {"weak_category": "tax", "category_success_rate": 0.25},
    PatternType.TOOL_INEFFICIENCY: {"inefficient_tool": "kubectl", "tool_success_rate": 0.2},
}


def _outcome(success):
    return {"success": success}


@pytest.mark.parametrize("pattern_type", list(PatternType))
def test_every_pattern_type_has_a_template(pattern_type):
    draft = generate_amendment(Pattern(
        type=pattern_type, confidence=0.8, data=PATTERN_DATA[pattern_type],
    ))
    template = AMENDMENT_TEMPLATES[pattern_type]
    assert draft.amendment_type == template.amendment_type
    assert draft.focus == template.focus
    assert draft.pattern_confidence == 0.8
    assert draft.target_area == draft.trigger_pattern
    assert draft.instruction_delta


def test_template_triggers():
    def trigger(t):
        return generate_amendment(Pattern(type=t, confidence=0.8, data=PATTERN_DATA[t])).trigger_pattern

    assert trigger(PatternType.REPEATED_FAILURE) == "task_category:expense_report"
    assert trigger(PatternType.TIME_REGRESSION) == "task_category:deploy"
    assert trigger(PatternType.QUALITY_DECLINE) == "quality_check:pre_delivery"
    assert trigger(PatternType.TOOL_INEFFICIENCY) == "tool_use:kubectl"


def test_generation_is_deterministic():
    pattern = Pattern(
        type=PatternType.REPEATED_FAILURE, confidence=0.75,
        data=PATTERN_DATA[PatternType.REPEATED_FAILURE],
    )
    assert generate_amendment(pattern) == generate_amendment(pattern)


def test_repeated_failure_template_content():
    draft = generate_amendment(Pattern(
        type=PatternType.REPEATED_FAILURE, confidence=0.75,
        data=PATTERN_DATA[PatternType.REPEATED_FAILURE],
    ))
    assert draft.amendment_type == AmendmentType.APPEND
    assert draft.focus == AmendmentFocus.BEHAVIORAL
    assert "missing receipts" in draft.instruction_delta
    guidance = draft.knowledge_mutation["category_guidance"]["expense_report"]
    assert guidance["risk_level"] == "elevated"


def test_unknown_pattern_type():
    with pytest.raises(UnknownPatternTypeError):
        generate_amendment({"type": "mood_swing", "confidence": 0.7, "data": {}})


def test_malformed_pattern():
    with pytest.raises(MalformedPatternError):
        generate_amendment({"type": "repeated_failure", "confidence": 0.7, "data": {}})


@pytest.mark.asyncio
async def test_process_pattern_reports_unknown_type(gov, draft):
    result = await gov.engine.process_pattern(
        "cfo", {"type": "mood_swing", "confidence": 0.7, "data": {}},
    )
    assert result.error.kind == "unknown_pattern_type"


@pytest.mark.asyncio
async def test_process_pattern_without_type(gov):
    result = await gov.engine.process_pattern("cfo", {"confidence": 0.7, "data": {}})
    assert not result.ok
    assert result.error.kind == "malformed_pattern"
    assert await gov.repository.list_amendments(agent_role="cfo") == []


@pytest.mark.asyncio
async def test_create_pending_amendment(gov, draft):
    result = await gov.engine.create_amendment("cfo", draft())
    assert result.ok
    amendment = result.data
    assert amendment.version == 1
    assert amendment.approval_status == ApprovalStatus.PENDING
    assert amendment.evaluation_status == EvaluationStatus.PENDING
    assert not amendment.is_active
    assert amendment.performance_before is not None


@pytest.mark.asyncio
async def test_create_auto_approved_amendment(gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).data
    assert amendment.is_active
    assert amendment.approval_status == ApprovalStatus.AUTO_APPROVED
    assert amendment.approved_by == "autonomous"
    assert amendment.evaluation_status == EvaluationStatus.EVALUATING

    agent = await gov.repository.get_agent("cfo")
    assert agent.active_amendment_count == 1


@pytest.mark.asyncio
async def test_create_for_unknown_agent(gov, draft):
    result = await gov.engine.create_amendment("nobody", draft())
    assert result.error.kind == "not_found"


@pytest.mark.asyncio
async def test_malformed_draft_is_invalid_input(gov, draft):
    result = await gov.engine.create_amendment("cfo", {"amendment_type": "append"})
    assert result.error.kind == "invalid_input"


@pytest.mark.asyncio
async def test_duplicate_active_trigger_conflicts(gov, draft):
    await gov.engine.create_amendment("cfo", draft(), auto_approve=True)
    result = await gov.engine.create_amendment("cfo", draft(delta="Other"), auto_approve=True)
    assert result.error.kind == "conflict"


@pytest.mark.asyncio
async def test_concurrent_creates_admit_one(gov, draft):
    results = await asyncio.gather(
        gov.engine.create_amendment("cfo", draft(), auto_approve=True),
        gov.engine.create_amendment("cfo", draft(), auto_approve=True),
    )
    kinds = sorted("ok" if r.ok else r.error.kind for r in results)
    assert kinds == ["conflict", "ok"]
    assert len(await gov.repository.active_amendments("cfo")) == 1


@pytest.mark.asyncio
async def test_active_amendment_cap(gov, draft):
    for i in range(10):
        result = await gov.engine.create_amendment(
            "cto", draft(trigger=f"task_category:area{i}"), auto_approve=True,
        )
        assert result.ok

    result = await gov.engine.create_amendment(
        "cto", draft(trigger="task_category:area10"), auto_approve=True,
    )
    assert result.error.kind == "validation"
    assert len(await gov.repository.active_amendments("cto")) == 10

    events = await gov.safety_log.query(
        agent_role="cto", constraint_type=ConstraintType.MAX_AMENDMENTS_EXCEEDED.value,
    )
    assert len(events) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_respect_cap(gov, draft):
    for i in range(8):
        await gov.engine.create_amendment(
            "qa", draft(trigger=f"task_category:area{i}"), auto_approve=True,
        )

    results = await asyncio.gather(*[
        gov.engine.create_amendment(
            "qa", draft(trigger=f"task_category:burst{i}"), auto_approve=True,
        )
        for i in range(5)
    ])
    assert sum(r.ok for r in results) == 2
    assert {r.error.kind for r in results if not r.ok} == {"validation"}
    assert len(await gov.repository.active_amendments("qa")) == 10


@pytest.mark.asyncio
async def test_protected_content_blocked_at_write(gov, draft):
    result = await gov.engine.create_amendment(
        "cfo", draft(trigger="bypass_approval_gate", delta="Disable safety checks"),
        auto_approve=True,
    )
    assert result.error.kind == "validation"
    assert await gov.repository.list_amendments(agent_role="cfo") == []


@pytest.mark.asyncio
async def test_activate_and_reject(gov, draft):
    first = (await gov.engine.create_amendment("cfo", draft())).data
    second = (await gov.engine.create_amendment(
        "cfo", draft(trigger="task_category:forecast"),
    )).data

    activated = (await gov.engine.activate(first.id, approved_by="ceo")).data
    assert activated.is_active
    assert activated.approval_status == ApprovalStatus.APPROVED
    assert activated.evaluation_status == EvaluationStatus.EVALUATING
    assert activated.activated_at is not None

    rejected = (await gov.engine.reject(second.id, "ceo", "not now")).data
    assert rejected.approval_status == ApprovalStatus.REJECTED
    assert not rejected.is_active

    again = await gov.engine.activate(second.id)
    assert again.error.kind == "invalid_transition"


@pytest.mark.asyncio
async def test_activate_with_pending_status_refused(gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft())).data
    result = await gov.engine.activate(amendment.id, ApprovalStatus.PENDING)
    assert result.error.kind == "invalid_transition"


@pytest.mark.asyncio
async def test_versioning_supersedes_parent(gov, draft):
    parent = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).data

    child = (await gov.engine.create_new_version(
        parent.id, {"instruction_delta": "Verify receipts against the ledger."},
    )).data
    assert child.version == 2
    assert child.parent_id == parent.id
    assert child.trigger_pattern == parent.trigger_pattern
    assert child.approval_status == ApprovalStatus.PENDING

    unchanged = (await gov.engine.get_amendment(parent.id)).data
    assert unchanged.is_active
    assert unchanged.instruction_delta == parent.instruction_delta

    (await gov.engine.activate(child.id, approved_by="ceo")).unwrap()
    old = (await gov.engine.get_amendment(parent.id)).data
    assert not old.is_active
    assert old.superseded_by == child.id
    assert old.evaluation_status == EvaluationStatus.REVERTED

    chain = (await gov.engine.get_version_chain(child.id)).data
    assert [a.id for a in chain] == [parent.id, child.id]


@pytest.mark.asyncio
async def test_version_of_missing_amendment(gov, draft):
    result = await gov.engine.create_new_version("missing", {"instruction_delta": "x"})
    assert result.error.kind == "not_found"


@pytest.mark.asyncio
async def test_evaluation_window_proven(gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).data
    for i, success in enumerate([True, False, True, False, True]):
        (await gov.engine.record_evaluation(amendment.id, f"t{i}", _outcome(success))).unwrap()

    done = (await gov.engine.get_amendment(amendment.id)).data
    assert done.evaluation_status == EvaluationStatus.PROVEN
    assert done.is_active
    assert done.tasks_evaluated == 5
    assert done.success_count == 3
    assert done.performance_after.sample_size == 5

    progress = (await gov.engine.get_evaluation_progress(amendment.id)).data
    assert progress.completed == 5
    assert [e.position for e in progress.evaluations] == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_evaluation_window_failed(gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).data
    for i, success in enumerate([True, False, True, False, False]):
        await gov.engine.record_evaluation(amendment.id, f"t{i}", _outcome(success))

    done = (await gov.engine.get_amendment(amendment.id)).data
    assert done.evaluation_status == EvaluationStatus.FAILED
    assert not done.is_active
    assert (await gov.repository.get_agent("cfo")).active_amendment_count == 0

    late = await gov.engine.record_evaluation(amendment.id, "t9", _outcome(True))
    assert late.error.kind == "invalid_transition"


@pytest.mark.asyncio
async def test_pending_amendment_does_not_accept_evaluations(gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft())).data
    result = await gov.engine.record_evaluation(amendment.id, "t0", _outcome(True))
    assert result.error.kind == "invalid_transition"


@pytest.mark.asyncio
async def test_deactivate(gov, draft):
    amendment = (await gov.engine.create_amendment("cfo", draft(), auto_approve=True)).data
    done = (await gov.engine.deactivate(amendment.id, "manual")).data
    assert not done.is_active
    assert done.evaluation_status == EvaluationStatus.REVERTED

    again = (await gov.engine.deactivate(amendment.id)).data
    assert again.evaluation_status == EvaluationStatus.REVERTED


@pytest.mark.asyncio
async def test_has_open_amendment(gov, draft):
    assert not await gov.engine.has_open_amendment("cfo", "task_category:expense_report")
    await gov.engine.create_amendment("cfo", draft())
    assert await gov.engine.has_open_amendment("cfo", "task_category:expense_report")
    assert not await gov.engine.has_open_amendment("cto", "task_category:expense_report")
