"""Amendment Engine — generates, versions and evaluates amendments.

Amendments only modify an agent's knowledge layer. Generation is a pure
template mapping from pattern type; every write that could activate an
amendment re-checks the safety invariants through the injected commit
guard inside a single store transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from statistics import mean
from typing import Any, Callable, Protocol

from amendgov.events.bus import EventBus
from amendgov.exceptions import (
    AmendmentConflictError,
    EvaluationClosedError,
    InvalidTransitionError,
    MalformedPatternError,
    SafetyValidationError,
    UnknownPatternTypeError,
)
from amendgov.governance import lifecycle
from amendgov.governance.patterns import summarize_performance
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    Amendment,
    AmendmentChanges,
    AmendmentContent,
    AmendmentDraft,
    AmendmentFocus,
    AmendmentType,
    ApprovalStatus,
    ConstraintType,
    Evaluation,
    EvaluationOutcome,
    EvaluationProgress,
    EvaluationStatus,
    Pattern,
    PatternType,
    PerformanceSnapshot,
    Result,
    Trend,
    Violation,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)


class CommitGuard(Protocol):
    """Write-time invariant check supplied by the safety layer."""

    async def check_commit(
        self, agent_role: str, content: AmendmentContent, exclude_ids: tuple[str, ...] = (),
    ) -> list[Violation]: ...

    async def report_violations(
        self, agent_role: str, violations: list[Violation], amendment_id: str | None = None,
    ) -> None: ...


class KnowledgeCache(Protocol):
    def invalidate_cache(self, agent_role: str) -> None: ...


class OutcomeMonitor(Protocol):
    """Receives the final verdict on each amendment evaluation."""

    async def note_outcome(
        self, amendment: Amendment, success: bool, details: dict[str, Any] | None = None,
    ) -> Any: ...

    async def evaluate_alerts(self) -> Any: ...


# ── Templates ────────────────────────────────────────────────────


@dataclass(frozen=True)
class AmendmentTemplate:
    amendment_type: AmendmentType
    focus: AmendmentFocus
    build: Callable[[dict[str, Any]], dict[str, Any]]


def _pct(value: Any) -> str:
    return f"{float(value) * 100:.0f}%"


def _repeated_failure(d: dict[str, Any]) -> dict[str, Any]:
    category = d["primary_category"]
    reasons = d.get("common_reasons") or []
    return {
        "trigger_pattern": f"task_category:{category}",
        "instruction_delta": (
            f"When handling {category} tasks, apply extra caution. "
            f"Common failure points: {', '.join(reasons) or 'unspecified'}. "
            "Verify each step before proceeding."
        ),
        "knowledge_mutation": {
            "category_guidance": {
                category: {
                    "risk_level": "elevated",
                    "common_failures": reasons,
                    "recommended_approach": "step-by-step verification",
                },
            },
        },
    }


def _time_regression(d: dict[str, Any]) -> dict[str, Any]:
    category = d["slowest_category"]
    return {
        "trigger_pattern": f"task_category:{category}",
        "instruction_delta": (
            f"Optimize execution time for {category} tasks. "
            f"Current: {d['recent_avg_seconds']}s, Target: {d['baseline_avg_seconds']}s. "
            "Identify bottlenecks before starting."
        ),
        "knowledge_mutation": {
            "efficiency_targets": {
                category: {
                    "target_seconds": d["baseline_avg_seconds"],
                    "current_seconds": d["recent_avg_seconds"],
                    "optimization_required": True,
                },
            },
        },
    }


def _quality_decline(d: dict[str, Any]) -> dict[str, Any]:
    return {
        "trigger_pattern": "quality_check:pre_delivery",
        "instruction_delta": (
            f"Quality focus required. Recent average: {d['recent_avg_quality']}, "
            f"Baseline: {d['baseline_avg_quality']}. "
            "Review deliverables against quality checklist before submission."
        ),
        "knowledge_mutation": {
            "quality_standards": {
                "min_acceptable": float(d["baseline_avg_quality"]),
                "current_trend": "declining",
                "review_required": True,
            },
        },
    }


def _category_weakness(d: dict[str, Any]) -> dict[str, Any]:
    category = d["weak_category"]
    return {
        "trigger_pattern": f"task_category:{category}",
        "instruction_delta": (
            f"Enhanced attention needed for {category} tasks. "
            f"Success rate: {_pct(d['category_success_rate'])}. "
            "Break down into smaller steps and validate each component."
        ),
        "knowledge_mutation": {
            "skill_gaps": {
                category: {
                    "current_success_rate": float(d["category_success_rate"]),
                    "target_success_rate": 0.85,
                    "approach": "decomposition",
                },
            },
        },
    }


def _tool_inefficiency(d: dict[str, Any]) -> dict[str, Any]:
    tool = d["inefficient_tool"]
    return {
        "trigger_pattern": f"tool_use:{tool}",
        "instruction_delta": (
            f"Reconsider using {tool}. Success rate: {_pct(d['tool_success_rate'])}. "
            "Consider alternatives or validate preconditions before use."
        ),
        "knowledge_mutation": {
            "tool_guidance": {
                tool: {
                    "reliability": float(d["tool_success_rate"]),
                    "recommendation": "use_with_caution",
                    "validate_before_use": True,
                },
            },
        },
    }


AMENDMENT_TEMPLATES: dict[PatternType, AmendmentTemplate] = {
    PatternType.REPEATED_FAILURE: AmendmentTemplate(
        AmendmentType.APPEND, AmendmentFocus.BEHAVIORAL, _repeated_failure),
    PatternType.TIME_REGRESSION: AmendmentTemplate(
        AmendmentType.APPEND, AmendmentFocus.EFFICIENCY, _time_regression),
    PatternType.QUALITY_DECLINE: AmendmentTemplate(
        AmendmentType.REPLACE, AmendmentFocus.QUALITY, _quality_decline),
    PatternType.CATEGORY_WEAKNESS: AmendmentTemplate(
        AmendmentType.APPEND, AmendmentFocus.SKILL_GAP, _category_weakness),
    PatternType.TOOL_INEFFICIENCY: AmendmentTemplate(
        AmendmentType.APPEND, AmendmentFocus.TOOLING, _tool_inefficiency),
}


def generate_amendment(pattern: Pattern | dict[str, Any]) -> AmendmentDraft:
    """Map a pattern to an amendment draft. Pure and deterministic."""
    if isinstance(pattern, Pattern):
        raw_type = pattern.type
    elif isinstance(pattern, dict) and pattern.get("type") is not None:
        raw_type = pattern["type"]
    else:
        raise MalformedPatternError(
            "Pattern has no type", {"pattern": repr(pattern)[:200]},
        )
    try:
        template = AMENDMENT_TEMPLATES[PatternType(raw_type)]
    except (ValueError, KeyError):
        raise UnknownPatternTypeError(
            f"No template for pattern type: {getattr(raw_type, 'value', raw_type)}",
            {"pattern_type": str(getattr(raw_type, "value", raw_type))},
        ) from None

    pattern = Pattern.model_validate(pattern)
    try:
        generated = template.build(pattern.data)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPatternError(
            f"{pattern.type.value} pattern is missing evidence: {e}",
            {"pattern_type": pattern.type.value},
        ) from e

    return AmendmentDraft(
        amendment_type=template.amendment_type,
        focus=template.focus,
        target_area=generated["trigger_pattern"],
        source_pattern=pattern.model_dump(mode="json", exclude={"log_id"}),
        pattern_confidence=pattern.confidence,
        **generated,
    )


def snapshot_from_evaluations(evaluations: list[Evaluation]) -> PerformanceSnapshot:
    qualities = [e.quality_score for e in evaluations if e.quality_score is not None]
    durations = [e.duration_seconds for e in evaluations if e.duration_seconds]
    return PerformanceSnapshot(
        sample_size=len(evaluations),
        success_rate=sum(e.success for e in evaluations) / len(evaluations) if evaluations else 0.0,
        avg_quality=mean(qualities) if qualities else None,
        avg_duration_seconds=mean(durations) if durations else None,
        trend=Trend.INSUFFICIENT_DATA,
    )


class AmendmentEngine:
    """Creates, activates and evaluates versioned amendments."""

    def __init__(
        self,
        repository: GovernanceRepository,
        guard: CommitGuard,
        knowledge: KnowledgeCache | None = None,
        event_bus: EventBus | None = None,
        evaluation_window: int = 5,
        proven_threshold: float = 0.6,
        monitor: OutcomeMonitor | None = None,
    ) -> None:
        self._repo = repository
        self._guard = guard
        self._knowledge = knowledge
        self._bus = event_bus
        self.evaluation_window = evaluation_window
        self.proven_threshold = proven_threshold
        self._monitor = monitor

    async def _emit(self, topic: str, amendment: Amendment, **extra: Any) -> None:
        if self._bus:
            await self._bus.emit(topic, {
                "amendment_id": amendment.id,
                "agent_role": amendment.agent_role,
                "trigger_pattern": amendment.trigger_pattern,
                **extra,
            }, source="amendment_engine")

    def _invalidate(self, agent_role: str) -> None:
        if self._knowledge is not None:
            self._knowledge.invalidate_cache(agent_role)

    async def _reject_write(
        self, agent_role: str, violations: list[Violation], amendment_id: str | None = None,
    ) -> None:
        """Log guard violations once the transaction is closed, then raise."""
        await self._guard.report_violations(agent_role, violations, amendment_id)
        if all(v.constraint_type == ConstraintType.CONFLICTING_AMENDMENT for v in violations):
            raise AmendmentConflictError(
                violations[0].message,
                {"violations": [v.model_dump(mode="json") for v in violations]},
            )
        raise SafetyValidationError(
            f"Amendment for {agent_role} rejected: "
            + "; ".join(v.message for v in violations),
            violations,
        )

    async def _sync_agent(self, agent_role: str) -> None:
        await self._repo.refresh_active_count(agent_role)
        self._invalidate(agent_role)

    # ── Generation and creation ──────────────────────────────────

    def generate_amendment(self, pattern: Pattern | dict[str, Any]) -> AmendmentDraft:
        return generate_amendment(pattern)

    @operation
    async def create_amendment(
        self,
        agent_role: str,
        draft: AmendmentDraft | dict[str, Any],
        auto_approve: bool = False,
    ) -> Amendment:
        """Persist a draft as version 1.

        With auto_approve the amendment starts active and evaluating;
        otherwise it waits pending approval.
        """
        draft = AmendmentDraft.model_validate(draft)
        async with self._repo.transaction():
            await self._repo.require_agent(agent_role)
            violations = await self._guard.check_commit(agent_role, draft)
            if not violations:
                amendment = await self._insert_new(agent_role, draft, auto_approve)
        if violations:
            await self._reject_write(agent_role, violations)

        logger.info(
            "Created %s amendment %s for %s: %s (%s)",
            amendment.amendment_type.value, amendment.id, agent_role,
            amendment.trigger_pattern, amendment.approval_status.value,
        )
        await self._emit(
            "amendment.created", amendment,
            approval_status=amendment.approval_status.value,
        )
        return amendment

    async def _insert_new(
        self, agent_role: str, draft: AmendmentDraft, auto_approve: bool,
    ) -> Amendment:
        now = utcnow()
        amendment = Amendment(
            agent_role=agent_role,
            evaluation_window=self.evaluation_window,
            performance_before=summarize_performance(
                await self._repo.recent_tasks(agent_role)
            ),
            created_at=now,
            **draft.model_dump(),
        )
        if auto_approve:
            amendment.approval_status = ApprovalStatus.AUTO_APPROVED
            amendment.approved_by = "autonomous"
            amendment.is_active = True
            amendment.activated_at = now
            lifecycle.transition(amendment, EvaluationStatus.EVALUATING)

        lifecycle.check_activation(amendment)
        await self._repo.insert_amendment(amendment)
        if amendment.is_active:
            await self._sync_agent(agent_role)
        return amendment

    @operation
    async def process_pattern(
        self, agent_role: str, pattern: Pattern | dict[str, Any], auto_approve: bool = False,
    ) -> Result:
        draft = generate_amendment(pattern)
        return await self.create_amendment(agent_role, draft, auto_approve=auto_approve)

    @operation
    async def create_new_version(
        self, amendment_id: str, changes: AmendmentChanges | dict[str, Any],
    ) -> Amendment:
        """Create a pending child version. The parent is not modified."""
        changes = AmendmentChanges.model_validate(changes)
        async with self._repo.transaction():
            parent = await self._repo.require_amendment(amendment_id)
            overrides = changes.model_dump(exclude_none=True)
            content = AmendmentDraft.model_validate({
                **parent.model_dump(include=set(AmendmentContent.model_fields)),
                **{k: v for k, v in overrides.items() if k in AmendmentContent.model_fields},
            })
            violations = await self._guard.check_commit(
                parent.agent_role, content, (parent.id,),
            )
            if not violations:
                child = Amendment(
                    agent_role=parent.agent_role,
                    version=parent.version + 1,
                    parent_id=parent.id,
                    evaluation_window=overrides.get(
                        "evaluation_window", parent.evaluation_window,
                    ),
                    performance_before=summarize_performance(
                        await self._repo.recent_tasks(parent.agent_role)
                    ),
                    **content.model_dump(),
                )
                await self._repo.insert_amendment(child)
        if violations:
            await self._reject_write(parent.agent_role, violations, parent.id)

        logger.info("Created version %d of %s as %s", child.version, parent.id, child.id)
        await self._emit("amendment.versioned", child, parent_id=parent.id)
        return child

    # ── Approval state ───────────────────────────────────────────

    @operation
    async def activate(
        self,
        amendment_id: str,
        approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
        approved_by: str = "operator",
        notes: str | None = None,
    ) -> Amendment:
        """Approve a pending amendment and start its evaluation window."""
        approval_status = ApprovalStatus(approval_status)
        if approval_status not in lifecycle.ACTIVE_APPROVAL_STATUSES:
            raise InvalidTransitionError(
                f"Cannot activate with approval status {approval_status.value}",
            )

        async with self._repo.transaction():
            amendment = await self._repo.require_amendment(amendment_id)
            if amendment.approval_status != ApprovalStatus.PENDING:
                raise InvalidTransitionError(
                    f"Amendment {amendment_id} is already {amendment.approval_status.value}",
                    {"amendment_id": amendment_id},
                )

            parent = None
            if amendment.parent_id:
                parent = await self._repo.get_amendment(amendment.parent_id)
                if parent is not None and not parent.is_active:
                    parent = None
            exclude = (parent.id,) if parent else ()
            violations = await self._guard.check_commit(amendment.agent_role, amendment, exclude)
            if not violations:
                await self._activate(amendment, parent, approval_status, approved_by, notes)
        if violations:
            await self._reject_write(amendment.agent_role, violations, amendment.id)

        logger.info("Amendment %s %s by %s", amendment.id, approval_status.value, approved_by)
        await self._emit(
            "amendment.activated", amendment,
            approved_by=approved_by, superseded=parent.id if parent else None,
        )
        return amendment

    async def _activate(
        self,
        amendment: Amendment,
        parent: Amendment | None,
        approval_status: ApprovalStatus,
        approved_by: str,
        notes: str | None,
    ) -> None:
        now = utcnow()
        amendment.approval_status = approval_status
        amendment.approved_by = approved_by
        amendment.approval_notes = notes
        amendment.is_active = True
        amendment.activated_at = now
        lifecycle.transition(amendment, EvaluationStatus.EVALUATING)
        lifecycle.check_activation(amendment)
        await self._repo.save_amendment(amendment)

        if parent is not None:
            parent.is_active = False
            parent.superseded_by = amendment.id
            if parent.evaluation_status == EvaluationStatus.EVALUATING:
                lifecycle.transition(parent, EvaluationStatus.REVERTED)
                parent.reverted_at = now
                parent.revert_reason = f"superseded by version {amendment.version}"
            await self._repo.save_amendment(parent)

        await self._sync_agent(amendment.agent_role)

    @operation
    async def reject(
        self, amendment_id: str, rejected_by: str = "operator", reason: str | None = None,
    ) -> Amendment:
        async with self._repo.transaction():
            amendment = await self._repo.require_amendment(amendment_id)
            if amendment.approval_status != ApprovalStatus.PENDING:
                raise InvalidTransitionError(
                    f"Amendment {amendment_id} is already {amendment.approval_status.value}",
                    {"amendment_id": amendment_id},
                )
            amendment.approval_status = ApprovalStatus.REJECTED
            amendment.approved_by = rejected_by
            amendment.approval_notes = reason
            amendment.is_active = False
            await self._repo.save_amendment(amendment)

        logger.info("Amendment %s rejected by %s", amendment_id, rejected_by)
        await self._emit("amendment.rejected", amendment, rejected_by=rejected_by)
        return amendment

    @operation
    async def deactivate(self, amendment_id: str, reason: str = "manual") -> Amendment:
        """Manually deactivate. Inactive amendments are returned unchanged."""
        async with self._repo.transaction():
            amendment = await self._repo.require_amendment(amendment_id)
            if not amendment.is_active:
                return amendment
            amendment.is_active = False
            if amendment.evaluation_status == EvaluationStatus.EVALUATING:
                lifecycle.transition(amendment, EvaluationStatus.REVERTED)
                amendment.reverted_at = utcnow()
                amendment.revert_reason = reason
            await self._repo.save_amendment(amendment)
            await self._sync_agent(amendment.agent_role)

        await self._emit("amendment.deactivated", amendment, reason=reason)
        return amendment

    # ── Evaluation ───────────────────────────────────────────────

    @operation
    async def record_evaluation(
        self, amendment_id: str, task_id: str, outcome: EvaluationOutcome | dict[str, Any],
    ) -> Evaluation:
        """Append one evaluation; close the window when it fills."""
        outcome = EvaluationOutcome.model_validate(outcome)
        async with self._repo.transaction():
            amendment = await self._repo.require_amendment(amendment_id)
            if (
                amendment.evaluation_status != EvaluationStatus.EVALUATING
                or not amendment.is_active
            ):
                raise EvaluationClosedError(
                    f"Amendment {amendment_id} is not evaluating "
                    f"(status {amendment.evaluation_status.value})",
                    {"amendment_id": amendment_id},
                )

            evaluation = Evaluation(
                amendment_id=amendment.id,
                agent_role=amendment.agent_role,
                task_id=task_id,
                position=amendment.tasks_evaluated + 1,
                success=outcome.success,
                quality_score=outcome.quality_score,
                duration_seconds=outcome.duration_seconds,
                feedback=outcome.feedback,
            )
            await self._repo.insert_evaluation(evaluation)

            amendment.tasks_evaluated += 1
            if outcome.success:
                amendment.success_count += 1
            else:
                amendment.failure_count += 1

            closed = amendment.tasks_evaluated >= amendment.evaluation_window
            if closed:
                ratio = amendment.success_count / amendment.tasks_evaluated
                target = (
                    EvaluationStatus.PROVEN
                    if ratio >= self.proven_threshold
                    else EvaluationStatus.FAILED
                )
                lifecycle.transition(amendment, target)
                amendment.evaluated_at = utcnow()
                amendment.performance_after = snapshot_from_evaluations(
                    await self._repo.evaluations_for(amendment.id)
                )
                if target == EvaluationStatus.FAILED:
                    amendment.is_active = False

            await self._repo.save_amendment(amendment)
            if closed and not amendment.is_active:
                await self._sync_agent(amendment.agent_role)
            if closed and self._monitor is not None:
                await self._monitor.note_outcome(
                    amendment,
                    amendment.evaluation_status == EvaluationStatus.PROVEN,
                    {
                        "success_count": amendment.success_count,
                        "tasks_evaluated": amendment.tasks_evaluated,
                    },
                )

        if closed:
            logger.info(
                "Amendment %s evaluation complete: %s (%d/%d)",
                amendment.id, amendment.evaluation_status.value,
                amendment.success_count, amendment.tasks_evaluated,
            )
            await self._emit(
                f"amendment.{amendment.evaluation_status.value}", amendment,
                success_count=amendment.success_count,
                tasks_evaluated=amendment.tasks_evaluated,
            )
            if self._monitor is not None:
                await self._monitor.evaluate_alerts()
        return evaluation

    # ── Queries ──────────────────────────────────────────────────

    @operation
    async def get_amendment(self, amendment_id: str) -> Amendment:
        return await self._repo.require_amendment(amendment_id)

    @operation
    async def get_pending_amendments(self, agent_role: str | None = None) -> list[Amendment]:
        filters: dict[str, Any] = {"approval_status": ApprovalStatus.PENDING}
        if agent_role:
            filters["agent_role"] = agent_role
        return await self._repo.list_amendments(**filters)

    @operation
    async def get_active_amendments(self, agent_role: str) -> list[Amendment]:
        return await self._repo.active_amendments(agent_role)

    @operation
    async def get_evaluation_progress(self, amendment_id: str) -> EvaluationProgress:
        amendment = await self._repo.require_amendment(amendment_id)
        evaluations = await self._repo.evaluations_for(amendment_id)
        return EvaluationProgress(
            amendment_id=amendment.id,
            completed=amendment.tasks_evaluated,
            total=amendment.evaluation_window,
            successes=amendment.success_count,
            failures=amendment.failure_count,
            status=amendment.evaluation_status,
            is_active=amendment.is_active,
            evaluations=evaluations,
        )

    @operation
    async def get_version_chain(self, amendment_id: str) -> list[Amendment]:
        """Ancestors and descendants of an amendment, oldest version first."""
        current = await self._repo.require_amendment(amendment_id)
        chain = [current]
        seen = {current.id}
        while chain[0].parent_id and chain[0].parent_id not in seen:
            parent = await self._repo.get_amendment(chain[0].parent_id)
            if parent is None:
                break
            chain.insert(0, parent)
            seen.add(parent.id)

        frontier = [current.id]
        while frontier:
            children = await self._repo.list_amendments(
                where=lambda a: a.parent_id in frontier and a.id not in seen,
            )
            chain.extend(children)
            seen.update(c.id for c in children)
            frontier = [c.id for c in children]
        chain.sort(key=lambda a: (a.version, a.created_at))
        return chain

    async def has_open_amendment(self, agent_role: str, trigger_pattern: str) -> bool:
        """True when a pending or active amendment already targets the trigger."""
        matches = await self._repo.list_amendments(
            where=lambda a: a.is_active or a.approval_status == ApprovalStatus.PENDING,
            agent_role=agent_role,
            trigger_pattern=trigger_pattern,
        )
        return bool(matches)
