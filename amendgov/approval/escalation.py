"""Exception escalation — the conditions that force human review.

In autonomous mode amendments are approved without a human EXCEPT when:

1. the amendment reaches into the skills layer,
2. the amendment reaches into the persona layer,
3. the agent has 3+ consecutive task failures not yet escalated,
4. 3+ agents each accumulate 2+ failed evaluations within one hour.

Checks run in that order and the first match decides the reason. The
thresholds and keyword tables come from amendgov.policy.rules and cannot
be overridden.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from amendgov.events.bus import EventBus
from amendgov.exceptions import InvalidResolutionError, InvalidTransitionError
from amendgov.policy.audit import SafetyLog
from amendgov.policy.rules import (
    ESCALATION_THRESHOLDS,
    PERSONA_LAYER_KEYWORDS,
    PERSONA_LAYER_MARKERS,
    SKILLS_LAYER_KEYWORDS,
    SKILLS_LAYER_MARKERS,
    EscalationThresholds,
)
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    AmendmentContent,
    ConstraintType,
    Escalation,
    EscalationReason,
    EscalationStatus,
    FailureStreak,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)

RESOLUTIONS = {
    "approved": EscalationStatus.APPROVED,
    "rejected": EscalationStatus.REJECTED,
    "dismissed": EscalationStatus.DISMISSED,
}


class LayerCheck(BaseModel):
    detected: bool
    layer: str
    matched_keywords: list[str] = Field(default_factory=list)
    explicit_marker: str | None = None


class EscalationDecision(BaseModel):
    should_escalate: bool
    reason: EscalationReason | None = None
    analysis: dict[str, Any] = Field(default_factory=dict)


def check_layer(
    text: str, layer: str, keywords: tuple[str, ...], markers: tuple[str, ...],
) -> LayerCheck:
    lowered = text.lower()
    matched = [k for k in keywords if k in lowered]
    marker = next((m for m in markers if m in lowered), None)
    return LayerCheck(
        detected=len(matched) >= ESCALATION_THRESHOLDS.keyword_matches or marker is not None,
        layer=layer,
        matched_keywords=matched,
        explicit_marker=marker,
    )


class ExceptionEscalation:
    """Determines when amendments need human review and tracks escalations."""

    def __init__(
        self,
        repository: GovernanceRepository,
        safety_log: SafetyLog | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._log = safety_log
        self._bus = event_bus

    @property
    def thresholds(self) -> EscalationThresholds:
        return ESCALATION_THRESHOLDS

    # ── Detection ────────────────────────────────────────────────

    def check_skills_layer(self, content: AmendmentContent) -> LayerCheck:
        return check_layer(
            content.scan_text(), "skills", SKILLS_LAYER_KEYWORDS, SKILLS_LAYER_MARKERS,
        )

    def check_persona_layer(self, content: AmendmentContent) -> LayerCheck:
        return check_layer(
            content.scan_text(), "persona", PERSONA_LAYER_KEYWORDS, PERSONA_LAYER_MARKERS,
        )

    async def check_consecutive_failures(self, agent_role: str) -> dict[str, Any]:
        streak = await self._repo.get_streak(agent_role)
        return {
            "detected": (
                streak.failure_count >= ESCALATION_THRESHOLDS.consecutive_failures
                and not streak.escalated
            ),
            "consecutive_failures": streak.failure_count,
            "failure_pattern": streak.failure_pattern,
            "threshold": ESCALATION_THRESHOLDS.consecutive_failures,
        }

    async def check_cross_agent_pattern(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        window = timedelta(hours=ESCALATION_THRESHOLDS.cross_agent_window_hours)
        failures = await self._repo.failed_evaluations_since(now - window)
        per_agent = Counter(e.agent_role for e in failures)
        declining = sorted(
            role for role, count in per_agent.items()
            if count >= ESCALATION_THRESHOLDS.cross_agent_min_failures
        )
        return {
            "detected": len(declining) >= ESCALATION_THRESHOLDS.cross_agent_min_agents,
            "affected_agents": declining,
            "failures_by_agent": dict(per_agent),
            "window_hours": ESCALATION_THRESHOLDS.cross_agent_window_hours,
        }

    @operation
    async def should_escalate(
        self, content: AmendmentContent, agent_role: str, now: datetime | None = None,
    ) -> EscalationDecision:
        return await self.decide(content, agent_role, now)

    async def decide(
        self, content: AmendmentContent, agent_role: str, now: datetime | None = None,
    ) -> EscalationDecision:
        skills = self.check_skills_layer(content)
        persona = self.check_persona_layer(content)

        if skills.detected or persona.detected:
            first = skills if skills.detected else persona
            reason = (
                EscalationReason.SKILLS_LAYER_MODIFICATION
                if skills.detected
                else EscalationReason.PERSONA_LAYER_MODIFICATION
            )
            analysis: dict[str, Any] = {first.layer: first.model_dump()}
            if skills.detected and persona.detected:
                # Both layers matched; skills wins by check order
                analysis["also_detected"] = EscalationReason.PERSONA_LAYER_MODIFICATION.value
                analysis["persona"] = persona.model_dump()
                logger.warning(
                    "Amendment for %s matches both skills and persona layers; "
                    "escalating as %s", agent_role, reason.value,
                )
            return EscalationDecision(should_escalate=True, reason=reason, analysis=analysis)

        failures = await self.check_consecutive_failures(agent_role)
        if failures["detected"]:
            return EscalationDecision(
                should_escalate=True,
                reason=EscalationReason.CONSECUTIVE_FAILURES,
                analysis=failures,
            )

        cross = await self.check_cross_agent_pattern(now)
        if cross["detected"]:
            return EscalationDecision(
                should_escalate=True,
                reason=EscalationReason.CROSS_AGENT_PATTERN,
                analysis=cross,
            )

        return EscalationDecision(should_escalate=False, analysis={"autonomous": True})

    # ── Escalation records ───────────────────────────────────────

    async def open(
        self,
        agent_role: str,
        reason: EscalationReason,
        analysis: dict[str, Any],
        amendment_id: str | None = None,
    ) -> Escalation:
        escalation = Escalation(
            reason=reason, agent_role=agent_role,
            amendment_id=amendment_id, analysis=analysis,
        )
        async with self._repo.transaction():
            await self._repo.insert_escalation(escalation)
            if reason == EscalationReason.CONSECUTIVE_FAILURES:
                streak = await self._repo.get_streak(agent_role)
                streak.escalated = True
                streak.escalation_id = escalation.id
                await self._repo.save_streak(streak)

        if self._log and reason in (
            EscalationReason.CONSECUTIVE_FAILURES, EscalationReason.CROSS_AGENT_PATTERN,
        ):
            await self._log.log_event(
                agent_role, ConstraintType(reason.value), analysis,
                action="escalated", amendment_id=amendment_id,
            )
        logger.warning(
            "Escalation %s created for %s: %s", escalation.id, agent_role, reason.value,
        )
        if self._bus:
            await self._bus.emit("escalation.created", {
                "escalation_id": escalation.id,
                "agent_role": agent_role,
                "reason": reason.value,
                "amendment_id": amendment_id,
            }, source="exception_escalation")
        return escalation

    @operation
    async def create_escalation(
        self,
        agent_role: str,
        reason: EscalationReason | str,
        analysis: dict[str, Any] | None = None,
        amendment_id: str | None = None,
    ) -> Escalation:
        return await self.open(agent_role, EscalationReason(reason), analysis or {}, amendment_id)

    async def mark_resolved(
        self,
        escalation_id: str,
        resolution: str,
        resolved_by: str,
        notes: str | None = None,
    ) -> Escalation:
        """Close a pending escalation. Does not touch the linked amendment."""
        status = parse_resolution(resolution)
        async with self._repo.transaction():
            escalation = await self._repo.require_escalation(escalation_id)
            if escalation.status != EscalationStatus.PENDING:
                raise InvalidTransitionError(
                    f"Escalation {escalation_id} is already {escalation.status.value}",
                    {"escalation_id": escalation_id},
                )
            escalation.status = status
            escalation.resolved_by = resolved_by
            escalation.resolution_notes = notes
            escalation.resolved_at = utcnow()
            await self._repo.save_escalation(escalation)

            if escalation.reason == EscalationReason.CONSECUTIVE_FAILURES:
                await self._reset(escalation.agent_role)

        logger.info(
            "Escalation %s %s by %s", escalation_id, status.value, resolved_by,
        )
        if self._bus:
            await self._bus.emit("escalation.resolved", {
                "escalation_id": escalation_id,
                "resolution": status.value,
                "resolved_by": resolved_by,
            }, source="exception_escalation")
        return escalation

    @operation
    async def get_escalation(self, escalation_id: str) -> Escalation:
        return await self._repo.require_escalation(escalation_id)

    @operation
    async def get_active_escalations(self) -> list[Escalation]:
        """Pending escalations, oldest first."""
        return await self._repo.list_escalations(status=EscalationStatus.PENDING)

    @operation
    async def get_escalation_history(self, limit: int = 50) -> list[Escalation]:
        return await self._repo.list_escalations(newest_first=True, limit=limit)

    @operation
    async def get_escalation_stats(self) -> dict[str, Any]:
        escalations = await self._repo.list_escalations()
        return {
            "total": len(escalations),
            "by_status": dict(Counter(e.status.value for e in escalations)),
            "by_reason": dict(Counter(e.reason.value for e in escalations)),
            "by_agent": dict(Counter(e.agent_role for e in escalations)),
        }

    # ── Failure streaks ──────────────────────────────────────────

    async def note_failure(self, agent_role: str, pattern: str | None = None) -> FailureStreak:
        streak = await self._repo.get_streak(agent_role)
        streak.failure_count += 1
        streak.failure_pattern = pattern or streak.failure_pattern
        streak.last_failure_at = utcnow()
        return await self._repo.save_streak(streak)

    async def _reset(self, agent_role: str) -> FailureStreak:
        streak = await self._repo.get_streak(agent_role)
        streak.failure_count = 0
        streak.failure_pattern = None
        streak.escalated = False
        streak.escalation_id = None
        streak.reset_at = utcnow()
        return await self._repo.save_streak(streak)

    @operation
    async def record_failure(self, agent_role: str, pattern: str | None = None) -> FailureStreak:
        return await self.note_failure(agent_role, pattern)

    @operation
    async def reset_consecutive_failures(self, agent_role: str) -> FailureStreak:
        return await self._reset(agent_role)

    async def reset_after_success(self, agent_role: str) -> FailureStreak | None:
        """Clear a non-escalated streak. Escalated streaks wait for resolution."""
        streak = await self._repo.get_streak(agent_role)
        if streak.failure_count == 0 or streak.escalated:
            return None
        return await self._reset(agent_role)


def parse_resolution(resolution: str) -> EscalationStatus:
    status = RESOLUTIONS.get(str(getattr(resolution, "value", resolution)).lower())
    if status is None:
        raise InvalidResolutionError(
            f"Invalid resolution {resolution!r}; use approved, rejected or dismissed",
            {"resolution": str(resolution)},
        )
    return status
