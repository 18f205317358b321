"""Tests for the supervisor self-monitor and its CEO alerts."""

import pytest

from amendgov.types import AlertStatus, AlertType, ConstraintType, HealthStatus, Trend


async def _amendment(gov, draft, role="cfo", trigger="task_category:expense_report"):
    return (await gov.engine.create_amendment(role, draft(trigger=trigger), auto_approve=True)).unwrap()


async def _record(gov, amendment_id, outcomes):
    for success in outcomes:
        (await gov.monitor.record_amendment_outcome(amendment_id, success)).unwrap()


async def _alert_types(gov, status=None):
    return sorted(a.alert_type.value for a in (await gov.monitor.list_alerts(status)).unwrap())


@pytest.mark.asyncio
async def test_initializing_until_enough_outcomes(gov, draft):
    amendment = await _amendment(gov, draft)
    await _record(gov, amendment.id, [False] * 9)

    rate = (await gov.monitor.compute_success_rate()).data
    assert rate.total == 9
    assert rate.success_rate == 0.0
    assert rate.insufficient

    health = (await gov.monitor.get_health_status()).data
    assert health.status == HealthStatus.INITIALIZING
    assert "Need 1 more" in health.message
    assert await _alert_types(gov) == []


@pytest.mark.asyncio
async def test_low_success_rate_alerts_once(gov, draft):
    amendment = await _amendment(gov, draft)
    await _record(gov, amendment.id, [True] * 4 + [False] * 6)

    alerts = (await gov.monitor.get_active_alerts()).data
    assert [a.alert_type for a in alerts] == [AlertType.LOW_SUCCESS_RATE]
    assert alerts[0].metrics["current_rate"] == 0.4
    assert alerts[0].metrics["window"] == 10
    assert gov.event_bus.history("monitor.alert")[0].data["alert_type"] == "cos_low_success_rate"

    await _record(gov, amendment.id, [False, False])
    assert await _alert_types(gov) == ["cos_low_success_rate"]

    health = (await gov.monitor.get_health_status()).data
    assert health.status == HealthStatus.CRITICAL
    assert health.metrics.has_active_alert


@pytest.mark.asyncio
async def test_rapid_decline(gov, draft):
    amendment = await _amendment(gov, draft)
    await _record(gov, amendment.id, [True] * 10 + [False] * 10)

    assert await _alert_types(gov) == ["cos_rapid_decline"]
    alert = (await gov.monitor.get_active_alerts()).data[0]
    assert alert.metrics["recent_rate"] == 0.0
    assert alert.metrics["previous_rate"] == 1.0

    metrics = (await gov.monitor.get_monitoring_metrics()).data
    assert metrics.trend == Trend.DECLINING
    assert metrics.success_rate == 0.5
    assert (await gov.monitor.get_health_status()).data.status == HealthStatus.WARNING


@pytest.mark.asyncio
async def test_sustained_low(gov, draft):
    amendment = await _amendment(gov, draft)
    await _record(gov, amendment.id, [True, False, False, False] * 5)

    assert await _alert_types(gov) == ["cos_low_success_rate", "cos_sustained_low"]
    sustained = [
        a for a in (await gov.monitor.get_active_alerts()).data
        if a.alert_type == AlertType.SUSTAINED_LOW
    ][0]
    assert sustained.metrics["recent_rate"] == 0.2
    assert sustained.metrics["previous_rate"] == 0.3


@pytest.mark.asyncio
async def test_window_only_counts_recent_outcomes(gov, draft):
    amendment = await _amendment(gov, draft)
    await _record(gov, amendment.id, [False] * 5 + [True] * 20)

    rate = (await gov.monitor.compute_success_rate()).data
    assert rate.total == 20
    assert rate.success_rate == 1.0
    assert (await gov.monitor.get_health_status()).data.status == HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_acknowledge_and_resolve(gov, draft):
    amendment = await _amendment(gov, draft)
    await _record(gov, amendment.id, [False] * 10)
    alert = (await gov.monitor.get_active_alerts()).data[0]

    acked = (await gov.monitor.acknowledge_alert(alert.id, "frank")).data
    assert acked.status == AlertStatus.ACKNOWLEDGED
    assert acked.acknowledged_by == "frank"
    assert acked.acknowledged_at is not None
    assert (await gov.monitor.get_active_alerts()).data == []

    again = await gov.monitor.acknowledge_alert(alert.id)
    assert again.error.kind == "invalid_transition"

    # An acknowledged alert is still open, so no duplicate is raised
    await _record(gov, amendment.id, [False])
    assert await _alert_types(gov) == ["cos_low_success_rate"]

    resolved = (await gov.monitor.resolve_alert(alert.id)).data
    assert resolved.status == AlertStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert (await gov.monitor.resolve_alert(alert.id)).error.kind == "invalid_transition"

    await _record(gov, amendment.id, [False])
    assert await _alert_types(gov, AlertStatus.ACTIVE) == ["cos_low_success_rate"]
    assert len((await gov.monitor.list_alerts()).data) == 2

    assert (await gov.monitor.resolve_alert("nope")).error.kind == "not_found"


@pytest.mark.asyncio
async def test_closed_evaluation_window_is_recorded(gov, draft):
    proven = await _amendment(gov, draft)
    failed = await _amendment(gov, draft, trigger="tool_use:kubectl")
    for i in range(gov.engine.evaluation_window):
        await gov.engine.record_evaluation(proven.id, f"p{i}", {"success": True})
        await gov.engine.record_evaluation(failed.id, f"f{i}", {"success": False})

    outcomes = await gov.repository.recent_monitor_outcomes()
    assert [(o.amendment_id, o.success) for o in outcomes] == [
        (failed.id, False), (proven.id, True),
    ]
    assert outcomes[0].details["tasks_evaluated"] == gov.engine.evaluation_window
    assert [o.sequence for o in outcomes] == [2, 1]


@pytest.mark.asyncio
async def test_open_evaluation_is_not_recorded(gov, draft):
    amendment = await _amendment(gov, draft)
    await gov.engine.record_evaluation(amendment.id, "t0", {"success": False})
    assert await gov.repository.recent_monitor_outcomes() == []


@pytest.mark.asyncio
async def test_revert_during_evaluation_counts_as_failure(gov, draft):
    amendment = await _amendment(gov, draft)
    await gov.safety.revert(amendment.id, ConstraintType.AUTO_REVERT_TRIGGERED)

    outcomes = await gov.repository.recent_monitor_outcomes()
    assert len(outcomes) == 1
    assert not outcomes[0].success
    assert outcomes[0].details["reverted"] == "auto_revert_triggered"


@pytest.mark.asyncio
async def test_revert_after_failed_window_is_not_counted_twice(gov, draft):
    amendment = await _amendment(gov, draft)
    for i in range(gov.engine.evaluation_window):
        await gov.engine.record_evaluation(amendment.id, f"t{i}", {"success": False})

    await gov.safety.revert(amendment.id, ConstraintType.AUTO_REVERT_TRIGGERED)

    outcomes = await gov.repository.recent_monitor_outcomes()
    assert len(outcomes) == 1
    assert "reverted" not in outcomes[0].details


@pytest.mark.asyncio
async def test_metrics_break_down_by_agent(gov, draft):
    cfo = await _amendment(gov, draft)
    cto = await _amendment(gov, draft, role="cto")
    await _record(gov, cfo.id, [True, False])
    await _record(gov, cto.id, [True])

    metrics = (await gov.monitor.get_monitoring_metrics()).data
    assert metrics.by_agent["cfo"].total == 2
    assert metrics.by_agent["cfo"].successes == 1
    assert metrics.by_agent["cto"].successes == 1
    assert metrics.trend == Trend.STABLE
    assert metrics.thresholds["alert_threshold"] == 0.5
    assert metrics.thresholds["modifiable"] is False


@pytest.mark.asyncio
async def test_unknown_amendment(gov):
    result = await gov.monitor.record_amendment_outcome("nope", True)
    assert result.error.kind == "not_found"
