"""Review cycle — the closed loop from task history to evaluated amendments.

A review pass runs the safety sweep, then for each agent refreshes the
performance snapshot, detects patterns, turns the new ones into
amendments through the approval workflow, and bakes when the agent's
amendment stack is full. Task outcomes flow back in through
record_task_outcome, which feeds each amendment under evaluation whose
trigger applies to the task.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from amendgov.approval.escalation import ExceptionEscalation
from amendgov.approval.workflow import ApprovalWorkflow, SubmissionOutcome
from amendgov.events.bus import EventBus
from amendgov.exceptions import InvalidRecommendationError
from amendgov.governance.baking import AmendmentBaking, BakeRecord
from amendgov.governance.engine import AmendmentEngine
from amendgov.governance.knowledge import TaskContext, matches_trigger
from amendgov.governance.patterns import PatternDetector, summarize_performance
from amendgov.governance.recommendations import recommendation_to_draft, validate_recommendation
from amendgov.governance.safety import AmendmentSafety, SafetyCheckReport
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    Amendment,
    EvaluationOutcome,
    EvaluationStatus,
    FailureStreak,
    ForcedReversion,
    OperationError,
    Pattern,
    PerformanceSnapshot,
    TaskHistoryEntry,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)


class RejectedCandidate(BaseModel):
    trigger_pattern: str
    reasons: list[str] = Field(default_factory=list)


class FlaggedCandidate(BaseModel):
    """Submitted despite advisory warnings, e.g. a possible contradiction."""

    trigger_pattern: str
    amendment_id: str
    reasons: list[str] = Field(default_factory=list)


class AgentReview(BaseModel):
    agent_role: str
    performance: PerformanceSnapshot | None = None
    patterns: list[Pattern] = Field(default_factory=list)
    skipped_triggers: list[str] = Field(default_factory=list)
    submitted: list[SubmissionOutcome] = Field(default_factory=list)
    rejected: list[RejectedCandidate] = Field(default_factory=list)
    flagged: list[FlaggedCandidate] = Field(default_factory=list)
    baked: BakeRecord | None = None
    message: str = ""


class CycleReport(BaseModel):
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    safety: SafetyCheckReport | None = None
    reviews: list[AgentReview] = Field(default_factory=list)
    errors: dict[str, OperationError] = Field(default_factory=dict)

    @property
    def amendments_submitted(self) -> int:
        return sum(len(r.submitted) for r in self.reviews)


class OutcomeReport(BaseModel):
    task: TaskHistoryEntry
    evaluated: list[str] = Field(default_factory=list)
    reverted: list[ForcedReversion] = Field(default_factory=list)
    streak: FailureStreak


class ReviewCycle:
    """Runs review passes and routes task outcomes into evaluations."""

    def __init__(
        self,
        repository: GovernanceRepository,
        detector: PatternDetector,
        engine: AmendmentEngine,
        safety: AmendmentSafety,
        workflow: ApprovalWorkflow,
        escalation: ExceptionEscalation,
        baking: AmendmentBaking,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._detector = detector
        self._engine = engine
        self._safety = safety
        self._workflow = workflow
        self._escalation = escalation
        self._baking = baking
        self._bus = event_bus

    async def _refresh_performance(self, agent_role: str) -> PerformanceSnapshot:
        async with self._repo.transaction():
            agent = await self._repo.require_agent(agent_role)
            agent.performance = summarize_performance(await self._detector.load_window(agent_role))
            agent.updated_at = utcnow()
            await self._repo.save_agent(agent)
        return agent.performance

    @operation
    async def review_agent(self, agent_role: str) -> AgentReview:
        """One review pass for one agent."""
        review = AgentReview(agent_role=agent_role)
        review.performance = await self._refresh_performance(agent_role)

        detected = await self._detector.detect_patterns(agent_role)
        patterns = detected.unwrap()
        review.patterns = patterns
        review.message = detected.message

        for pattern in patterns:
            draft = self._engine.generate_amendment(pattern)
            if await self._engine.has_open_amendment(agent_role, draft.trigger_pattern):
                review.skipped_triggers.append(draft.trigger_pattern)
                continue

            report = (await self._safety.validate_amendment(agent_role, draft)).unwrap()
            blocking = [v.message for v in report.blocking]
            if blocking:
                review.rejected.append(RejectedCandidate(
                    trigger_pattern=draft.trigger_pattern, reasons=blocking,
                ))
                if pattern.log_id:
                    await self._detector.dismiss_pattern(pattern.log_id, "; ".join(blocking))
                continue

            submitted = await self._workflow.submit(agent_role, draft)
            if not submitted.ok:
                # Lost a race with a concurrent writer; the store re-check won
                review.rejected.append(RejectedCandidate(
                    trigger_pattern=draft.trigger_pattern, reasons=[submitted.error.message],
                ))
                continue
            outcome: SubmissionOutcome = submitted.data
            review.submitted.append(outcome)
            if report.flags:
                review.flagged.append(FlaggedCandidate(
                    trigger_pattern=draft.trigger_pattern,
                    amendment_id=outcome.amendment.id,
                    reasons=[v.message for v in report.flags],
                ))
            if pattern.log_id:
                await self._detector.link_pattern_to_amendment(pattern.log_id, outcome.amendment.id)

        review.baked = await self._baking.auto_bake(agent_role)

        logger.info(
            "Reviewed %s: %d patterns, %d submitted, %d rejected, %d skipped",
            agent_role, len(review.patterns), len(review.submitted),
            len(review.rejected), len(review.skipped_triggers),
        )
        if self._bus:
            await self._bus.emit("review.agent_reviewed", {
                "agent_role": agent_role,
                "patterns": len(review.patterns),
                "submitted": [o.amendment.id for o in review.submitted],
                "rejected": len(review.rejected),
                "flagged": [f.amendment_id for f in review.flagged],
            }, source="review_cycle")
        return review

    @operation
    async def run(self, roles: list[str] | None = None, now: datetime | None = None) -> CycleReport:
        """Safety sweep, then a review of every agent."""
        report = CycleReport()
        report.safety = (await self._safety.run_safety_checks(now)).unwrap()

        if roles is None:
            roles = [a.role for a in await self._repo.list_agents()]
        for role in roles:
            result = await self.review_agent(role)
            if result.ok:
                report.reviews.append(result.data)
            else:
                logger.warning("Review of %s failed: %s", role, result.error.message)
                report.errors[role] = result.error

        report.completed_at = utcnow()
        if self._bus:
            await self._bus.emit("review.cycle_completed", {
                "agents": len(roles),
                "submitted": report.amendments_submitted,
                "reverted": report.safety.total_reverted,
                "errors": list(report.errors),
            }, source="review_cycle")
        return report

    # ── Outcomes ─────────────────────────────────────────────────

    async def _evaluation_targets(self, entry: TaskHistoryEntry) -> list[Amendment]:
        evaluating = await self._repo.list_amendments(
            agent_role=entry.agent_role,
            evaluation_status=EvaluationStatus.EVALUATING,
            is_active=True,
        )
        context = TaskContext(
            category=entry.category, tools=entry.tools_used, phase=entry.phase,
        )
        return [a for a in evaluating if matches_trigger(a.trigger_pattern, context)]

    @operation
    async def record_task_outcome(self, entry: TaskHistoryEntry | dict[str, Any]) -> OutcomeReport:
        """Store a finished task and feed it to the amendments under evaluation.

        The evaluations and the consecutive-failure counter are written in
        one transaction. The auto-revert check runs after it commits.
        """
        entry = TaskHistoryEntry.model_validate(entry)
        outcome = EvaluationOutcome(
            success=entry.success,
            quality_score=entry.quality_score,
            duration_seconds=entry.duration_seconds,
            feedback=entry.failure_reason or "",
        )

        async with self._repo.transaction():
            await self._repo.require_agent(entry.agent_role)
            await self._repo.add_task(entry)
            evaluated = []
            for amendment in await self._evaluation_targets(entry):
                (await self._engine.record_evaluation(amendment.id, entry.task_id, outcome)).unwrap()
                evaluated.append(amendment.id)

            if entry.success:
                streak = (
                    await self._escalation.reset_after_success(entry.agent_role)
                    or await self._repo.get_streak(entry.agent_role)
                )
            else:
                streak = await self._escalation.note_failure(
                    entry.agent_role, entry.failure_reason or entry.category,
                )

        reverted = []
        for amendment_id in evaluated:
            result = await self._safety.check_auto_revert(amendment_id)
            if not result.ok:
                logger.warning(
                    "Auto-revert check for %s failed: %s", amendment_id, result.error.message,
                )
            elif result.data:
                reverted.append(result.data)

        return OutcomeReport(task=entry, evaluated=evaluated, reverted=reverted, streak=streak)

    # ── Recommendations ──────────────────────────────────────────

    @operation
    async def submit_recommendation(
        self, agent_role: str, recommendation: dict[str, Any],
    ) -> SubmissionOutcome:
        """Validate an external recommendation and submit it as an amendment."""
        await self._repo.require_agent(agent_role)
        check = validate_recommendation(
            recommendation, await self._repo.active_amendments(agent_role),
        )
        if not check.valid:
            raise InvalidRecommendationError(
                f"Recommendation rejected: {'; '.join(check.errors)}",
                {"errors": check.errors},
            )
        draft = recommendation_to_draft(recommendation)
        return (await self._workflow.submit(agent_role, draft)).unwrap()
