"""Self-monitor — watches whether the supervisor's own amendments work.

Every closed evaluation window and every forced revert of an amendment
under evaluation becomes a MonitorOutcome. Over a rolling window of the
most recent outcomes the monitor computes a success rate and raises CEO
alerts when it sinks. The thresholds come from amendgov.policy.rules and
cannot be changed at runtime.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from pydantic import BaseModel, Field

from amendgov.events.bus import EventBus
from amendgov.exceptions import InvalidTransitionError
from amendgov.policy.rules import SELF_MONITOR_LIMITS, SelfMonitorLimits
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    AlertStatus,
    AlertType,
    Amendment,
    CeoAlert,
    HealthStatus,
    MonitorOutcome,
    Trend,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)

OPEN_ALERT_STATUSES = [AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED]


class SuccessRate(BaseModel):
    success_rate: float | None = None
    total: int = 0
    successes: int = 0
    failures: int = 0
    insufficient: bool = True
    window_size: int = SELF_MONITOR_LIMITS.window_size


class AgentOutcomeStats(BaseModel):
    total: int = 0
    successes: int = 0


class MonitoringMetrics(SuccessRate):
    trend: Trend = Trend.STABLE
    thresholds: dict[str, Any] = Field(default_factory=dict)
    active_alerts: list[CeoAlert] = Field(default_factory=list)
    by_agent: dict[str, AgentOutcomeStats] = Field(default_factory=dict)

    @property
    def has_active_alert(self) -> bool:
        return bool(self.active_alerts)


class HealthReport(BaseModel):
    status: HealthStatus
    message: str
    metrics: MonitoringMetrics


def _rate(outcomes: list[MonitorOutcome]) -> float:
    return sum(o.success for o in outcomes) / len(outcomes)


def _halves(window: list[MonitorOutcome]) -> tuple[float, float]:
    """Success rate of the newer and the older half of a newest-first window."""
    half = len(window) // 2
    return _rate(window[:half]), _rate(window[half:])


class SelfMonitor:
    """Rolling success rate of amendments and the CEO alerts it raises."""

    def __init__(
        self, repository: GovernanceRepository, event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self._bus = event_bus

    @property
    def limits(self) -> SelfMonitorLimits:
        return SELF_MONITOR_LIMITS

    # ── Recording ────────────────────────────────────────────────

    async def note_outcome(
        self, amendment: Amendment, success: bool, details: dict[str, Any] | None = None,
    ) -> MonitorOutcome:
        """Append one outcome. Joins the caller's transaction when there is one."""
        async with self._repo.transaction():
            latest = await self._repo.recent_monitor_outcomes(limit=1)
            outcome = MonitorOutcome(
                sequence=latest[0].sequence + 1 if latest else 1,
                amendment_id=amendment.id,
                agent_role=amendment.agent_role,
                success=success,
                details=details or {},
            )
            await self._repo.insert_monitor_outcome(outcome)
        return outcome

    @operation
    async def record_amendment_outcome(
        self, amendment_id: str, success: bool, details: dict[str, Any] | None = None,
    ) -> MonitorOutcome:
        amendment = await self._repo.require_amendment(amendment_id)
        outcome = await self.note_outcome(amendment, success, details)
        await self.evaluate_alerts()
        return outcome

    # ── Rates ────────────────────────────────────────────────────

    async def _window(self) -> list[MonitorOutcome]:
        return await self._repo.recent_monitor_outcomes(limit=SELF_MONITOR_LIMITS.window_size)

    def _summarize(self, window: list[MonitorOutcome]) -> SuccessRate:
        if not window:
            return SuccessRate()
        successes = sum(o.success for o in window)
        return SuccessRate(
            success_rate=successes / len(window),
            total=len(window),
            successes=successes,
            failures=len(window) - successes,
            insufficient=len(window) < SELF_MONITOR_LIMITS.min_amendments,
        )

    @operation
    async def compute_success_rate(self) -> SuccessRate:
        return self._summarize(await self._window())

    def _trend(self, window: list[MonitorOutcome]) -> Trend:
        if len(window) < SELF_MONITOR_LIMITS.window_size:
            return Trend.STABLE
        recent, previous = _halves(window)
        if recent > previous + SELF_MONITOR_LIMITS.trend_delta:
            return Trend.IMPROVING
        if recent < previous - SELF_MONITOR_LIMITS.trend_delta:
            return Trend.DECLINING
        return Trend.STABLE

    async def _metrics(self) -> MonitoringMetrics:
        window = await self._window()
        by_agent: dict[str, AgentOutcomeStats] = defaultdict(AgentOutcomeStats)
        for outcome in await self._repo.recent_monitor_outcomes(
            limit=SELF_MONITOR_LIMITS.breakdown_window,
        ):
            stats = by_agent[outcome.agent_role]
            stats.total += 1
            stats.successes += outcome.success
        return MonitoringMetrics(
            **self._summarize(window).model_dump(),
            trend=self._trend(window),
            thresholds=self.get_constraints(),
            active_alerts=await self._repo.list_alerts(AlertStatus.ACTIVE),
            by_agent=dict(by_agent),
        )

    @operation
    async def get_monitoring_metrics(self) -> MonitoringMetrics:
        return await self._metrics()

    # ── Alerts ───────────────────────────────────────────────────

    def _breaches(self, window: list[MonitorOutcome]) -> list[tuple[AlertType, str, dict[str, Any]]]:
        limits = SELF_MONITOR_LIMITS
        rate = self._summarize(window)
        if rate.insufficient:
            return []
        breaches = []
        if rate.success_rate < limits.alert_threshold:
            breaches.append((
                AlertType.LOW_SUCCESS_RATE,
                f"Amendment success rate dropped below {limits.alert_threshold:.0%}",
                {
                    "current_rate": rate.success_rate,
                    "threshold": limits.alert_threshold,
                    "window": rate.total,
                    "successes": rate.successes,
                    "failures": rate.failures,
                },
            ))
        if len(window) >= limits.window_size:
            recent, previous = _halves(window)
            halves = {"recent_rate": recent, "previous_rate": previous}
            if recent < previous - limits.rapid_decline_drop:
                breaches.append((
                    AlertType.RAPID_DECLINE,
                    f"Amendment success rate fell from {previous:.0%} to {recent:.0%}",
                    {**halves, "max_drop": limits.rapid_decline_drop},
                ))
            if recent < limits.alert_threshold and previous < limits.alert_threshold:
                breaches.append((
                    AlertType.SUSTAINED_LOW,
                    f"Amendment success rate below {limits.alert_threshold:.0%} "
                    f"for {len(window)} amendments",
                    {**halves, "threshold": limits.alert_threshold},
                ))
        return breaches

    async def evaluate_alerts(self) -> list[CeoAlert]:
        """Raise one alert per breached rule that has no open alert yet."""
        created = []
        async with self._repo.transaction():
            breaches = self._breaches(await self._window())
            if not breaches:
                return []
            open_types = {a.alert_type for a in await self._repo.list_alerts(OPEN_ALERT_STATUSES)}
            for alert_type, message, metrics in breaches:
                if alert_type in open_types:
                    continue
                created.append(await self._repo.insert_alert(CeoAlert(
                    alert_type=alert_type, message=message, metrics=metrics,
                )))

        for alert in created:
            logger.warning("CEO alert %s: %s", alert.alert_type.value, alert.message)
            if self._bus:
                await self._bus.emit(
                    "monitor.alert", alert.model_dump(mode="json"), source="self_monitor",
                )
        return created

    @operation
    async def check_alert_thresholds(self) -> list[CeoAlert]:
        return await self.evaluate_alerts()

    @operation
    async def get_active_alerts(self) -> list[CeoAlert]:
        return await self._repo.list_alerts(AlertStatus.ACTIVE)

    @operation
    async def list_alerts(self, status: AlertStatus | None = None) -> list[CeoAlert]:
        return await self._repo.list_alerts(status)

    @operation
    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str = "ceo") -> CeoAlert:
        async with self._repo.transaction():
            alert = await self._repo.require_alert(alert_id)
            if alert.status != AlertStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Alert {alert_id} is {alert.status.value}, not active",
                    {"alert_id": alert_id, "status": alert.status.value},
                )
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = utcnow()
            return await self._repo.save_alert(alert)

    @operation
    async def resolve_alert(self, alert_id: str) -> CeoAlert:
        async with self._repo.transaction():
            alert = await self._repo.require_alert(alert_id)
            if alert.status not in OPEN_ALERT_STATUSES:
                raise InvalidTransitionError(
                    f"Alert {alert_id} is already {alert.status.value}",
                    {"alert_id": alert_id, "status": alert.status.value},
                )
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = utcnow()
            return await self._repo.save_alert(alert)

    # ── Health ───────────────────────────────────────────────────

    @operation
    async def get_health_status(self) -> HealthReport:
        limits = SELF_MONITOR_LIMITS
        metrics = await self._metrics()
        if metrics.insufficient:
            return HealthReport(
                status=HealthStatus.INITIALIZING,
                message=(
                    f"Need {limits.min_amendments - metrics.total} more amendment "
                    "outcomes for monitoring"
                ),
                metrics=metrics,
            )
        rate = metrics.success_rate
        if rate < limits.alert_threshold:
            status = HealthStatus.CRITICAL
            message = f"Success rate {rate:.1%} is below the {limits.alert_threshold:.0%} threshold"
        elif rate < limits.alert_threshold + limits.warning_margin:
            status = HealthStatus.WARNING
            message = f"Success rate {rate:.1%} is approaching the threshold"
        else:
            status = HealthStatus.HEALTHY
            message = f"Success rate {rate:.1%} is within the acceptable range"
        return HealthReport(status=status, message=message, metrics=metrics)

    def get_constraints(self) -> dict[str, Any]:
        limits = SELF_MONITOR_LIMITS
        return {
            "alert_threshold": limits.alert_threshold,
            "window_size": limits.window_size,
            "min_amendments": limits.min_amendments,
            "rapid_decline_drop": limits.rapid_decline_drop,
            "modifiable": False,
        }
