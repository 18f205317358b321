"""Approval workflow — decides who approves an amendment.

Three modes:
- AUTONOMOUS: amendments are auto-approved unless an exception escalates
- STRICT: every amendment waits for a human
- TRUST: per-focus tiers; some auto-approve once the agent has earned trust

Escalation conditions apply in every mode.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from amendgov.approval.escalation import EscalationDecision, ExceptionEscalation, parse_resolution
from amendgov.events.bus import EventBus
from amendgov.exceptions import InvalidModeError
from amendgov.governance.engine import AmendmentEngine
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    Amendment,
    AmendmentContent,
    AmendmentDraft,
    AmendmentFocus,
    AmendmentType,
    ApprovalMode,
    ApprovalStatus,
    Escalation,
    EscalationStatus,
    EvaluationStatus,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)

AUTONOMOUS_APPROVER = "cos_autonomous"

MODE_DESCRIPTIONS = {
    ApprovalMode.AUTONOMOUS: "Amendments auto-approve; humans review exceptions only",
    ApprovalMode.STRICT: "All amendments require human approval",
    ApprovalMode.TRUST: "Trusted agents can auto-approve lower-risk amendments",
}

FINISHED_STATUSES = (EvaluationStatus.PROVEN, EvaluationStatus.FAILED, EvaluationStatus.REVERTED)


class ApprovalTier(str, Enum):
    ALWAYS_REQUIRED = "always_required"
    AUTO_AFTER_TRUST = "auto_after_trust"
    AUTO_APPROVED = "auto_approved"


AMENDMENT_APPROVAL_MAP: dict[AmendmentFocus, ApprovalTier] = {
    AmendmentFocus.BEHAVIORAL: ApprovalTier.ALWAYS_REQUIRED,
    AmendmentFocus.SKILL_GAP: ApprovalTier.ALWAYS_REQUIRED,
    AmendmentFocus.EFFICIENCY: ApprovalTier.AUTO_AFTER_TRUST,
    AmendmentFocus.QUALITY: ApprovalTier.AUTO_AFTER_TRUST,
    AmendmentFocus.TOOLING: ApprovalTier.AUTO_AFTER_TRUST,
    AmendmentFocus.KNOWLEDGE: ApprovalTier.AUTO_AFTER_TRUST,
}


@dataclass
class TrustThresholds:
    min_proven_amendments: int = 5
    min_success_rate: float = 0.8
    min_active_days: int = 30


class TrustReport(BaseModel):
    trusted: bool
    proven_amendments: int = 0
    total_amendments: int = 0
    success_rate: float = 0.0
    active_days: float = 0.0
    reason: str = ""


class ApprovalDecision(BaseModel):
    required: bool
    reason: str
    tier: ApprovalTier
    autonomous: bool
    escalation: EscalationDecision | None = None
    trust: TrustReport | None = None


class SubmissionOutcome(BaseModel):
    amendment: Amendment
    decision: ApprovalDecision
    escalation: Escalation | None = None


class ApprovalWorkflow:
    """Routes amendments to auto-approval or human review."""

    def __init__(
        self,
        repository: GovernanceRepository,
        engine: AmendmentEngine,
        escalation: ExceptionEscalation,
        mode: ApprovalMode | str = ApprovalMode.AUTONOMOUS,
        trust_thresholds: TrustThresholds | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._engine = engine
        self._escalation = escalation
        self._mode = ApprovalMode.AUTONOMOUS
        self.set_mode(mode)
        self.trust_thresholds = trust_thresholds or TrustThresholds()
        self._bus = event_bus

    # ── Mode ─────────────────────────────────────────────────────

    @property
    def mode(self) -> ApprovalMode:
        return self._mode

    def set_mode(self, mode: ApprovalMode | str) -> None:
        try:
            self._mode = ApprovalMode(mode)
        except ValueError:
            raise InvalidModeError(
                f"Invalid mode {mode!r}. Use strict, trust or autonomous.",
                {"mode": str(mode)},
            ) from None
        logger.info("Approval mode set to %s", self._mode.value)

    def get_mode(self) -> dict[str, str]:
        return {"mode": self._mode.value, "description": MODE_DESCRIPTIONS[self._mode]}

    # ── Decision ─────────────────────────────────────────────────

    async def decide(
        self, agent_role: str, content: AmendmentContent, now: datetime | None = None,
    ) -> ApprovalDecision:
        escalation = await self._escalation.decide(content, agent_role, now)
        if escalation.should_escalate:
            return ApprovalDecision(
                required=True,
                reason=f"Exception detected: {escalation.reason.value}",
                tier=ApprovalTier.ALWAYS_REQUIRED,
                autonomous=False,
                escalation=escalation,
            )

        if self._mode == ApprovalMode.AUTONOMOUS:
            return ApprovalDecision(
                required=False,
                reason="Autonomous mode: standard knowledge-layer amendment",
                tier=ApprovalTier.AUTO_APPROVED,
                autonomous=True,
                escalation=escalation,
            )

        if self._mode == ApprovalMode.STRICT:
            return ApprovalDecision(
                required=True,
                reason="Strict mode: all amendments require approval",
                tier=ApprovalTier.ALWAYS_REQUIRED,
                autonomous=False,
            )

        if content.amendment_type == AmendmentType.REMOVE:
            tier = ApprovalTier.ALWAYS_REQUIRED
        else:
            tier = AMENDMENT_APPROVAL_MAP.get(content.focus, ApprovalTier.ALWAYS_REQUIRED)

        if tier == ApprovalTier.ALWAYS_REQUIRED:
            return ApprovalDecision(
                required=True,
                reason=(
                    f"{content.focus.value} {content.amendment_type.value} "
                    "amendments always require approval"
                ),
                tier=tier,
                autonomous=False,
            )

        trust = await self._trust(agent_role, now)
        if trust.trusted:
            return ApprovalDecision(
                required=False,
                reason=(
                    f"Agent {agent_role} has established trust "
                    f"({trust.proven_amendments} proven, {trust.success_rate:.0%} success)"
                ),
                tier=tier,
                autonomous=True,
                trust=trust,
            )
        return ApprovalDecision(
            required=True,
            reason=f"Agent {agent_role} has not established sufficient trust yet",
            tier=tier,
            autonomous=False,
            trust=trust,
        )

    @operation
    async def requires_approval(
        self, agent_role: str, draft: AmendmentContent | dict[str, Any],
    ) -> ApprovalDecision:
        if isinstance(draft, dict):
            draft = AmendmentDraft.model_validate(draft)
        await self._repo.require_agent(agent_role)
        return await self.decide(agent_role, draft)

    async def _trust(self, agent_role: str, now: datetime | None = None) -> TrustReport:
        now = now or utcnow()
        history = await self._repo.list_amendments(agent_role=agent_role)
        finished = [a for a in history if a.evaluation_status in FINISHED_STATUSES]
        if not finished:
            return TrustReport(trusted=False, reason="No amendment history")

        proven = sum(1 for a in finished if a.evaluation_status == EvaluationStatus.PROVEN)
        rate = proven / len(finished)
        days = (now - min(a.created_at for a in history)) / timedelta(days=1)
        t = self.trust_thresholds
        trusted = (
            proven >= t.min_proven_amendments
            and rate >= t.min_success_rate
            and days >= t.min_active_days
        )
        return TrustReport(
            trusted=trusted,
            proven_amendments=proven,
            total_amendments=len(finished),
            success_rate=rate,
            active_days=round(days, 1),
            reason="" if trusted else "Thresholds not met",
        )

    @operation
    async def check_agent_trust(self, agent_role: str, now: datetime | None = None) -> TrustReport:
        return await self._trust(agent_role, now)

    # ── Submission ───────────────────────────────────────────────

    @operation
    async def submit(
        self, agent_role: str, draft: AmendmentDraft | dict[str, Any],
    ) -> SubmissionOutcome:
        """Create an amendment, auto-approving or escalating as decided."""
        draft = AmendmentDraft.model_validate(draft)
        await self._repo.require_agent(agent_role)
        decision = await self.decide(agent_role, draft)

        amendment = (await self._engine.create_amendment(
            agent_role, draft, auto_approve=not decision.required,
        )).unwrap()

        escalation = None
        if decision.escalation and decision.escalation.should_escalate:
            escalation = await self._escalation.open(
                agent_role,
                decision.escalation.reason,
                decision.escalation.analysis,
                amendment_id=amendment.id,
            )
        return SubmissionOutcome(amendment=amendment, decision=decision, escalation=escalation)

    @operation
    async def process_pending(self, amendment_id: str) -> SubmissionOutcome:
        """Re-run the approval decision for an amendment still pending."""
        amendment = await self._repo.require_amendment(amendment_id)
        decision = await self.decide(amendment.agent_role, amendment)
        escalation = None
        if not decision.required:
            amendment = (await self._engine.activate(
                amendment.id, ApprovalStatus.AUTO_APPROVED, AUTONOMOUS_APPROVER,
                "Auto-approved on re-evaluation",
            )).unwrap()
        elif decision.escalation and decision.escalation.should_escalate:
            escalation = await self._escalation.open(
                amendment.agent_role,
                decision.escalation.reason,
                decision.escalation.analysis,
                amendment_id=amendment.id,
            )
        return SubmissionOutcome(amendment=amendment, decision=decision, escalation=escalation)

    # ── Human actions ────────────────────────────────────────────

    @operation
    async def approve(
        self, amendment_id: str, approver: str = "ceo", notes: str | None = None,
    ) -> Amendment:
        return (await self._engine.activate(
            amendment_id, ApprovalStatus.APPROVED, approver, notes,
        )).unwrap()

    @operation
    async def reject(
        self, amendment_id: str, approver: str = "ceo", reason: str | None = None,
    ) -> Amendment:
        return (await self._engine.reject(amendment_id, approver, reason)).unwrap()

    @operation
    async def approve_all(self, approver: str = "ceo", notes: str = "Bulk approved") -> dict[str, Any]:
        """Approve every pending amendment; failures are reported, not raised."""
        approved, failed = [], {}
        for amendment in await self._repo.list_amendments(
            approval_status=ApprovalStatus.PENDING,
        ):
            result = await self._engine.activate(
                amendment.id, ApprovalStatus.APPROVED, approver, notes,
            )
            if result.ok:
                approved.append(amendment.id)
            else:
                failed[amendment.id] = result.error.message
        return {"approved": approved, "failed": failed}

    @operation
    async def resolve_escalation(
        self,
        escalation_id: str,
        resolution: str,
        resolved_by: str = "ceo",
        notes: str | None = None,
    ) -> Escalation:
        """Resolve an escalation and apply it to the linked amendment.

        approved activates the amendment; rejected or dismissed rejects it.
        The amendment decision and the escalation close in one transaction.
        The escalation stays pending if the amendment cannot be activated.
        """
        status = parse_resolution(resolution)
        async with self._repo.transaction():
            escalation = await self._repo.require_escalation(escalation_id)
            if escalation.status != EscalationStatus.PENDING:
                # Surfaced by mark_resolved with the proper error
                return await self._escalation.mark_resolved(
                    escalation_id, resolution, resolved_by, notes,
                )

            if escalation.amendment_id:
                amendment = await self._repo.require_amendment(escalation.amendment_id)
                if amendment.approval_status == ApprovalStatus.PENDING:
                    if status == EscalationStatus.APPROVED:
                        applied = await self._engine.activate(
                            amendment.id, ApprovalStatus.APPROVED, resolved_by, notes,
                        )
                    else:
                        applied = await self._engine.reject(
                            amendment.id, resolved_by, notes or f"Escalation {status.value}",
                        )
                    if not applied.ok:
                        # Commits only the logged violations
                        return applied

            return await self._escalation.mark_resolved(
                escalation_id, resolution, resolved_by, notes,
            )

    # ── Queue views ──────────────────────────────────────────────

    @operation
    async def get_pending_approvals(self) -> list[dict[str, Any]]:
        pending = await self._repo.list_amendments(approval_status=ApprovalStatus.PENDING)
        escalations = {
            e.amendment_id: e
            for e in await self._repo.list_escalations(status=EscalationStatus.PENDING)
            if e.amendment_id
        }
        now = utcnow()
        return [
            {
                "id": a.id,
                "agent_role": a.agent_role,
                "amendment_type": a.amendment_type.value,
                "focus": a.focus.value,
                "trigger_pattern": a.trigger_pattern,
                "instruction_delta": a.instruction_delta,
                "pattern_confidence": a.pattern_confidence,
                "version": a.version,
                "age_hours": round((now - a.created_at).total_seconds() / 3600, 1),
                "escalation_id": escalations[a.id].id if a.id in escalations else None,
                "escalation_reason": (
                    escalations[a.id].reason.value if a.id in escalations else None
                ),
            }
            for a in pending
        ]

    @operation
    async def get_queue_stats(self) -> dict[str, Any]:
        amendments = await self._repo.list_amendments()
        by_agent: dict[str, Counter] = defaultdict(Counter)
        for a in amendments:
            by_agent[a.agent_role][a.approval_status.value] += 1
        pending = [a for a in amendments if a.approval_status == ApprovalStatus.PENDING]
        return {
            **{s.value: 0 for s in ApprovalStatus},
            **Counter(a.approval_status.value for a in amendments),
            "by_agent": {role: dict(c) for role, c in by_agent.items()},
            "oldest_pending": (
                min(a.created_at for a in pending).isoformat() if pending else None
            ),
        }

    @operation
    async def get_approval_history(self, limit: int = 20) -> list[Amendment]:
        decided = await self._repo.list_amendments(
            where=lambda a: a.approval_status != ApprovalStatus.PENDING,
        )
        decided.sort(key=lambda a: a.activated_at or a.created_at, reverse=True)
        return decided[:limit]

    @operation
    async def check_trust_mode_readiness(self) -> dict[str, Any]:
        finished = await self._repo.list_amendments(
            evaluation_status=list(FINISHED_STATUSES),
        )
        t = self.trust_thresholds
        if len(finished) < t.min_proven_amendments:
            return {
                "ready": False,
                "reason": "Insufficient amendment history",
                "current": len(finished),
                "required": t.min_proven_amendments,
            }
        proven = sum(1 for a in finished if a.evaluation_status == EvaluationStatus.PROVEN)
        rate = proven / len(finished)
        if rate < t.min_success_rate:
            return {
                "ready": False,
                "reason": "Success rate below threshold",
                "current": round(rate, 3),
                "required": t.min_success_rate,
            }
        return {"ready": True, "proven": proven, "success_rate": round(rate, 3)}
