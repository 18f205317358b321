"""Amendment safety — non-bypassable bounds on self-modification.

Validates candidates against the hardcoded policy (protected patterns,
active-amendment cap, trigger conflicts, contradictions), enforces the
evaluation timeout and auto-revert rules, and records every violation
and forced reversion in the safety log. The limits come from
amendgov.policy.rules and cannot be changed at runtime.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from amendgov.events.bus import EventBus
from amendgov.governance import lifecycle
from amendgov.governance.engine import KnowledgeCache, OutcomeMonitor
from amendgov.policy.audit import SafetyLog
from amendgov.policy.contradiction import ContradictionDetector, detect_contradiction
from amendgov.policy.rules import SAFETY_LIMITS, SafetyLimits, matches_protected
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    AmendmentContent,
    AmendmentDraft,
    ConstraintType,
    EvaluationStatus,
    ForcedReversion,
    SafetyEvent,
    ValidationReport,
    Violation,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    checked: int = 0
    reverted: list[ForcedReversion] = Field(default_factory=list)


class SafetyCheckReport(BaseModel):
    timeouts: SweepReport
    auto_reverts: list[ForcedReversion] = Field(default_factory=list)

    @property
    def total_reverted(self) -> int:
        return len(self.timeouts.reverted) + len(self.auto_reverts)


class AmendmentSafety:
    """Safety constraints and rollback for amendments."""

    def __init__(
        self,
        repository: GovernanceRepository,
        safety_log: SafetyLog,
        knowledge: KnowledgeCache | None = None,
        event_bus: EventBus | None = None,
        contradiction_detector: ContradictionDetector = detect_contradiction,
        monitor: OutcomeMonitor | None = None,
    ) -> None:
        self._repo = repository
        self._log = safety_log
        self._knowledge = knowledge
        self._bus = event_bus
        self._contradicts = contradiction_detector
        self._monitor = monitor

    @property
    def limits(self) -> SafetyLimits:
        return SAFETY_LIMITS

    # ── Individual rules ─────────────────────────────────────────

    def check_protected_patterns(self, content: AmendmentContent) -> Violation | None:
        matched = matches_protected(content.scan_text())
        if not matched:
            return None
        return Violation(
            constraint_type=ConstraintType.PROTECTED_PATTERN_VIOLATION,
            message=f"Amendment touches protected pattern: {matched[0]}",
            action="blocked",
            data={"matched_patterns": matched, "trigger_pattern": content.trigger_pattern},
        )

    def is_protected_action(self, text: str) -> bool:
        return bool(matches_protected(text))

    async def check_amendment_limit(
        self, agent_role: str, exclude_ids: tuple[str, ...] = (),
    ) -> Violation | None:
        active = await self._repo.active_amendments(agent_role, exclude=exclude_ids)
        limit = SAFETY_LIMITS.max_active_amendments
        if len(active) < limit:
            return None
        return Violation(
            constraint_type=ConstraintType.MAX_AMENDMENTS_EXCEEDED,
            message=f"Agent {agent_role} has {len(active)} active amendments (max {limit})",
            action="blocked",
            data={"current_count": len(active), "max_allowed": limit},
        )

    async def check_conflicts(
        self,
        agent_role: str,
        content: AmendmentContent,
        exclude_ids: tuple[str, ...] = (),
        heuristic: bool = True,
    ) -> list[Violation]:
        violations = []
        candidate_text = content.instruction_delta
        for existing in await self._repo.active_amendments(agent_role, exclude=exclude_ids):
            if existing.trigger_pattern == content.trigger_pattern:
                violations.append(Violation(
                    constraint_type=ConstraintType.CONFLICTING_AMENDMENT,
                    message=(
                        f"Active amendment {existing.id} already exists for trigger: "
                        f"{content.trigger_pattern}"
                    ),
                    action="blocked",
                    data={"conflicting_id": existing.id, "kind": "duplicate_trigger"},
                ))
            elif heuristic and self._contradicts(existing.instruction_delta, candidate_text):
                violations.append(Violation(
                    constraint_type=ConstraintType.CONFLICTING_AMENDMENT,
                    message=(
                        f"Amendment may contradict active amendment {existing.id} "
                        f"({existing.trigger_pattern})"
                    ),
                    action="flagged",
                    data={"conflicting_id": existing.id, "kind": "contradiction"},
                ))
        return violations

    # ── Validation ───────────────────────────────────────────────

    async def _collect(
        self,
        agent_role: str,
        content: AmendmentContent,
        exclude_ids: tuple[str, ...],
        heuristic: bool,
    ) -> list[Violation]:
        violations: list[Violation] = []
        protected = self.check_protected_patterns(content)
        if protected:
            violations.append(protected)
        limit = await self.check_amendment_limit(agent_role, exclude_ids)
        if limit:
            violations.append(limit)
        violations.extend(
            await self.check_conflicts(agent_role, content, exclude_ids, heuristic)
        )
        return violations

    @operation
    async def validate_amendment(
        self, agent_role: str, draft: AmendmentDraft | dict[str, Any],
    ) -> ValidationReport:
        """Run every rule and return all violations, logging each one."""
        draft = AmendmentDraft.model_validate(draft)
        await self._repo.require_agent(agent_role)
        violations = await self._collect(agent_role, draft, (), heuristic=True)
        await self.report_violations(agent_role, violations)
        return ValidationReport(valid=not violations, violations=violations)

    async def check_commit(
        self,
        agent_role: str,
        content: AmendmentContent,
        exclude_ids: tuple[str, ...] = (),
    ) -> list[Violation]:
        """Write-time re-check run inside the engine's transaction."""
        return await self._collect(agent_role, content, exclude_ids, heuristic=False)

    async def report_violations(
        self, agent_role: str, violations: list[Violation], amendment_id: str | None = None,
    ) -> None:
        for violation in violations:
            await self._log.log_violation(agent_role, violation, amendment_id)

    # ── Rollback ─────────────────────────────────────────────────

    async def revert(
        self,
        amendment_id: str,
        rule: ConstraintType,
        data: dict[str, Any] | None = None,
    ) -> ForcedReversion | None:
        """Force an amendment to reverted. Already reverted is a no-op."""
        data = data or {}
        async with self._repo.transaction():
            amendment = await self._repo.require_amendment(amendment_id)
            if amendment.evaluation_status == EvaluationStatus.REVERTED:
                return None
            previous = lifecycle.transition(amendment, EvaluationStatus.REVERTED)
            amendment.is_active = False
            amendment.reverted_at = utcnow()
            amendment.revert_reason = rule.value
            await self._repo.save_amendment(amendment)
            await self._repo.refresh_active_count(amendment.agent_role)
            await self._log.record(SafetyEvent(
                agent_role=amendment.agent_role,
                constraint_type=rule,
                constraint_data={"trigger_pattern": amendment.trigger_pattern, **data},
                action_taken="reverted",
                amendment_id=amendment.id,
            ))
            # A reverted evaluation counts once, as a failure
            counted = previous == EvaluationStatus.EVALUATING and self._monitor is not None
            if counted:
                await self._monitor.note_outcome(
                    amendment, False, {"reverted": rule.value, **data},
                )

        if self._knowledge is not None:
            self._knowledge.invalidate_cache(amendment.agent_role)
        logger.warning(
            "Reverted amendment %s for %s: %s", amendment.id, amendment.agent_role, rule.value,
        )
        if self._bus:
            await self._bus.emit("safety.reverted", {
                "amendment_id": amendment.id,
                "agent_role": amendment.agent_role,
                "rule": rule.value,
            }, source="amendment_safety")
        if counted:
            await self._monitor.evaluate_alerts()
        return ForcedReversion(
            amendment_id=amendment.id,
            agent_role=amendment.agent_role,
            rule=rule,
            data=data,
            reverted_at=amendment.reverted_at,
        )

    @operation
    async def check_auto_revert(self, amendment_id: str) -> ForcedReversion | None:
        """Revert when the most recent evaluations are all failures."""
        amendment = await self._repo.require_amendment(amendment_id)
        if amendment.evaluation_status == EvaluationStatus.REVERTED:
            return None
        streak = SAFETY_LIMITS.auto_revert_failures
        recent = await self._repo.evaluations_for(amendment_id, newest_first=True, limit=streak)
        if len(recent) < streak or any(e.success for e in recent):
            return None
        return await self.revert(
            amendment_id,
            ConstraintType.AUTO_REVERT_TRIGGERED,
            {
                "consecutive_failures": streak,
                "task_ids": [e.task_id for e in recent],
            },
        )

    @operation
    async def enforce_evaluation_timeout(self, now: datetime | None = None) -> SweepReport:
        """Revert amendments stuck evaluating past the timeout."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=SAFETY_LIMITS.evaluation_timeout_hours)
        evaluating = await self._repo.list_amendments(
            evaluation_status=EvaluationStatus.EVALUATING,
        )
        report = SweepReport(checked=len(evaluating))
        for amendment in evaluating:
            started = amendment.activated_at or amendment.created_at
            if started >= cutoff:
                continue
            completed = len(await self._repo.evaluations_for(amendment.id))
            if completed >= SAFETY_LIMITS.min_evaluation_tasks:
                continue
            reverted = await self.revert(
                amendment.id,
                ConstraintType.EVALUATION_TIMEOUT,
                {
                    "evaluations_completed": completed,
                    "evaluations_required": SAFETY_LIMITS.min_evaluation_tasks,
                    "hours_elapsed": round((now - started).total_seconds() / 3600, 1),
                },
            )
            if reverted:
                report.reverted.append(reverted)
        return report

    @operation
    async def run_safety_checks(self, now: datetime | None = None) -> SafetyCheckReport:
        """Timeout sweep, then auto-revert over every evaluating amendment."""
        timeouts = (await self.enforce_evaluation_timeout(now)).unwrap()
        auto_reverts = []
        for amendment in await self._repo.list_amendments(
            evaluation_status=EvaluationStatus.EVALUATING,
        ):
            reverted = (await self.check_auto_revert(amendment.id)).unwrap()
            if reverted:
                auto_reverts.append(reverted)
        if timeouts.reverted or auto_reverts:
            logger.info(
                "Safety checks reverted %d amendments",
                len(timeouts.reverted) + len(auto_reverts),
            )
        return SafetyCheckReport(timeouts=timeouts, auto_reverts=auto_reverts)

    # ── Reporting ────────────────────────────────────────────────

    @operation
    async def get_safety_log(
        self, agent_role: str = "", constraint_type: str = "", limit: int = 50,
    ) -> list[SafetyEvent]:
        return await self._log.query(agent_role, constraint_type, limit)

    @operation
    async def get_safety_stats(self) -> dict[str, Any]:
        stats = await self._log.stats()
        stats["limits"] = {
            "max_active_amendments": SAFETY_LIMITS.max_active_amendments,
            "auto_revert_failures": SAFETY_LIMITS.auto_revert_failures,
            "evaluation_timeout_hours": SAFETY_LIMITS.evaluation_timeout_hours,
            "min_evaluation_tasks": SAFETY_LIMITS.min_evaluation_tasks,
        }
        return stats
