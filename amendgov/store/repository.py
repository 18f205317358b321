"""GovernanceRepository — typed access to the governance collections.

Converts between pydantic models and store records, and bounds every
store call with a timeout so an unreachable store surfaces as
StoreUnavailableError instead of hanging a review cycle.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from pydantic import BaseModel

from amendgov.exceptions import NotFoundError, StoreUnavailableError
from amendgov.store.base import BaseStore, StoreQuery
from amendgov.types import (
    Agent,
    AlertStatus,
    Amendment,
    CeoAlert,
    Escalation,
    EscalationStatus,
    Evaluation,
    FailureStreak,
    MonitorOutcome,
    PatternLogEntry,
    SafetyEvent,
    TaskHistoryEntry,
    utcnow,
)

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")

AGENTS = "agents"
TASKS = "task_history"
AMENDMENTS = "amendments"
EVALUATIONS = "evaluations"
ESCALATIONS = "escalations"
FAILURE_STREAKS = "failure_streaks"
SAFETY_EVENTS = "safety_events"
PATTERN_LOG = "pattern_log"
MONITOR_OUTCOMES = "monitor_outcomes"
CEO_ALERTS = "ceo_alerts"


class GovernanceRepository:
    def __init__(self, store: BaseStore, timeout_seconds: float = 5.0) -> None:
        self.store = store
        self._timeout = timeout_seconds

    def transaction(self) -> AbstractAsyncContextManager[None]:
        return self.store.transaction()

    async def _call(self, coro: Awaitable[R]) -> R:
        try:
            async with asyncio.timeout(self._timeout):
                return await coro
        except TimeoutError as e:
            raise StoreUnavailableError(
                f"Store call timed out after {self._timeout}s"
            ) from e

    async def _insert(self, collection: str, model: BaseModel) -> None:
        record = model.model_dump(mode="json")
        record.setdefault("id", getattr(model, "id"))
        await self._call(self.store.insert(collection, record))

    async def _save(self, collection: str, model: BaseModel) -> None:
        record = model.model_dump(mode="json")
        record.setdefault("id", getattr(model, "id"))
        updated = await self._call(self.store.update(collection, record["id"], record))
        if updated is None:
            await self._call(self.store.insert(collection, record))

    async def _get(self, collection: str, model: type[M], record_id: str) -> M | None:
        row = await self._call(self.store.get(collection, record_id))
        return model.model_validate(row) if row is not None else None

    async def _list(
        self,
        collection: str,
        model: type[M],
        filters: dict[str, Any] | None = None,
        where: Callable[[M], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[M]:
        query = StoreQuery(
            filters=filters or {},
            order_by=order_by,
            descending=descending,
            limit=None if where else limit,
        )
        rows = await self._call(self.store.query(collection, query))
        items = [model.model_validate(r) for r in rows]
        if where is not None:
            items = [i for i in items if where(i)]
            if limit is not None:
                items = items[:limit]
        return items

    # ── Agents ───────────────────────────────────────────────────

    async def get_agent(self, role: str) -> Agent | None:
        return await self._get(AGENTS, Agent, role)

    async def require_agent(self, role: str) -> Agent:
        agent = await self.get_agent(role)
        if agent is None:
            raise NotFoundError(f"Unknown agent role: {role}", {"agent_role": role})
        return agent

    async def save_agent(self, agent: Agent) -> Agent:
        agent.updated_at = utcnow()
        await self._save(AGENTS, agent)
        return agent

    async def list_agents(self) -> list[Agent]:
        return await self._list(AGENTS, Agent, order_by="role")

    # ── Task history (written by the execution collaborator) ─────

    async def add_task(self, entry: TaskHistoryEntry) -> TaskHistoryEntry:
        await self._insert(TASKS, entry)
        return entry

    async def recent_tasks(
        self, role: str, limit: int = 20, since: datetime | None = None,
    ) -> list[TaskHistoryEntry]:
        """Newest first."""
        return await self._list(
            TASKS,
            TaskHistoryEntry,
            filters={"agent_role": role},
            where=(lambda t: t.completed_at >= since) if since else None,
            order_by="completed_at",
            descending=True,
            limit=limit,
        )

    # ── Amendments ───────────────────────────────────────────────

    async def insert_amendment(self, amendment: Amendment) -> Amendment:
        await self._insert(AMENDMENTS, amendment)
        return amendment

    async def get_amendment(self, amendment_id: str) -> Amendment | None:
        return await self._get(AMENDMENTS, Amendment, amendment_id)

    async def require_amendment(self, amendment_id: str) -> Amendment:
        amendment = await self.get_amendment(amendment_id)
        if amendment is None:
            raise NotFoundError(
                f"Amendment {amendment_id} not found", {"amendment_id": amendment_id},
            )
        return amendment

    async def save_amendment(self, amendment: Amendment) -> Amendment:
        await self._save(AMENDMENTS, amendment)
        return amendment

    async def list_amendments(
        self,
        where: Callable[[Amendment], bool] | None = None,
        descending: bool = False,
        limit: int | None = None,
        **filters: Any,
    ) -> list[Amendment]:
        return await self._list(
            AMENDMENTS, Amendment, filters=filters, where=where,
            order_by="created_at", descending=descending, limit=limit,
        )

    async def active_amendments(self, role: str, exclude: Iterable[str] = ()) -> list[Amendment]:
        """Active amendments in creation order."""
        skip = set(exclude)
        return await self.list_amendments(
            where=(lambda a: a.id not in skip) if skip else None,
            agent_role=role, is_active=True,
        )

    async def refresh_active_count(self, role: str) -> int:
        """Re-derive the agent's denormalized active-amendment count."""
        count = len(await self.active_amendments(role))
        agent = await self.get_agent(role)
        if agent is not None and agent.active_amendment_count != count:
            agent.active_amendment_count = count
            await self.save_agent(agent)
        return count

    # ── Evaluations ──────────────────────────────────────────────

    async def insert_evaluation(self, evaluation: Evaluation) -> Evaluation:
        await self._insert(EVALUATIONS, evaluation)
        return evaluation

    async def evaluations_for(
        self, amendment_id: str, newest_first: bool = False, limit: int | None = None,
    ) -> list[Evaluation]:
        return await self._list(
            EVALUATIONS, Evaluation,
            filters={"amendment_id": amendment_id},
            order_by="position", descending=newest_first, limit=limit,
        )

    async def failed_evaluations_since(self, since: datetime) -> list[Evaluation]:
        return await self._list(
            EVALUATIONS, Evaluation,
            filters={"success": False},
            where=lambda e: e.evaluated_at >= since,
            order_by="evaluated_at",
        )

    # ── Escalations and failure streaks ──────────────────────────

    async def insert_escalation(self, escalation: Escalation) -> Escalation:
        await self._insert(ESCALATIONS, escalation)
        return escalation

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        return await self._get(ESCALATIONS, Escalation, escalation_id)

    async def require_escalation(self, escalation_id: str) -> Escalation:
        escalation = await self.get_escalation(escalation_id)
        if escalation is None:
            raise NotFoundError(
                f"Escalation {escalation_id} not found", {"escalation_id": escalation_id},
            )
        return escalation

    async def save_escalation(self, escalation: Escalation) -> Escalation:
        await self._save(ESCALATIONS, escalation)
        return escalation

    async def list_escalations(
        self, status: EscalationStatus | None = None, newest_first: bool = False,
        limit: int | None = None, **filters: Any,
    ) -> list[Escalation]:
        if status is not None:
            filters["status"] = status
        return await self._list(
            ESCALATIONS, Escalation, filters=filters,
            order_by="created_at", descending=newest_first, limit=limit,
        )

    async def get_streak(self, role: str) -> FailureStreak:
        streak = await self._get(FAILURE_STREAKS, FailureStreak, role)
        return streak or FailureStreak(agent_role=role)

    async def save_streak(self, streak: FailureStreak) -> FailureStreak:
        await self._save(FAILURE_STREAKS, streak)
        return streak

    # ── Safety events (append-only) ──────────────────────────────

    async def insert_safety_event(self, event: SafetyEvent) -> SafetyEvent:
        await self._insert(SAFETY_EVENTS, event)
        return event

    async def list_safety_events(
        self, limit: int | None = None, **filters: Any,
    ) -> list[SafetyEvent]:
        return await self._list(
            SAFETY_EVENTS, SafetyEvent, filters=filters,
            order_by="created_at", descending=True, limit=limit,
        )

    # ── Pattern log ──────────────────────────────────────────────

    async def insert_pattern_log(self, entry: PatternLogEntry) -> PatternLogEntry:
        await self._insert(PATTERN_LOG, entry)
        return entry

    async def get_pattern_log(self, log_id: str) -> PatternLogEntry:
        entry = await self._get(PATTERN_LOG, PatternLogEntry, log_id)
        if entry is None:
            raise NotFoundError(f"Pattern log entry {log_id} not found", {"log_id": log_id})
        return entry

    async def save_pattern_log(self, entry: PatternLogEntry) -> PatternLogEntry:
        await self._save(PATTERN_LOG, entry)
        return entry

    async def list_pattern_log(
        self, role: str, since: datetime | None = None, limit: int | None = None,
    ) -> list[PatternLogEntry]:
        return await self._list(
            PATTERN_LOG, PatternLogEntry,
            filters={"agent_role": role},
            where=(lambda p: p.created_at >= since) if since else None,
            order_by="created_at", descending=True, limit=limit,
        )

    # ── Self-monitor ─────────────────────────────────────────────

    async def insert_monitor_outcome(self, outcome: MonitorOutcome) -> MonitorOutcome:
        await self._insert(MONITOR_OUTCOMES, outcome)
        return outcome

    async def recent_monitor_outcomes(self, limit: int | None = None) -> list[MonitorOutcome]:
        """Newest first."""
        return await self._list(
            MONITOR_OUTCOMES, MonitorOutcome,
            order_by="sequence", descending=True, limit=limit,
        )

    async def insert_alert(self, alert: CeoAlert) -> CeoAlert:
        await self._insert(CEO_ALERTS, alert)
        return alert

    async def require_alert(self, alert_id: str) -> CeoAlert:
        alert = await self._get(CEO_ALERTS, CeoAlert, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found", {"alert_id": alert_id})
        return alert

    async def save_alert(self, alert: CeoAlert) -> CeoAlert:
        await self._save(CEO_ALERTS, alert)
        return alert

    async def list_alerts(
        self, status: AlertStatus | list[AlertStatus] | None = None,
    ) -> list[CeoAlert]:
        filters = {"status": status} if status is not None else {}
        return await self._list(
            CEO_ALERTS, CeoAlert, filters=filters, order_by="created_at", descending=True,
        )
