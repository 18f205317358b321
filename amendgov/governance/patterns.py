"""Pattern detection — turns an agent's task history into behavioral signals.

Reads a bounded window of recent TaskHistoryEntries (newest first) and
emits confidence-scored Patterns. Detection is pure over the task list;
only loading the window and logging the results touch the store.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import timedelta
from statistics import mean
from typing import Any

from amendgov.events.bus import EventBus
from amendgov.store.repository import GovernanceRepository
from amendgov.types import (
    Pattern,
    PatternLogEntry,
    PatternType,
    PerformanceSnapshot,
    Result,
    TaskHistoryEntry,
    Trend,
    operation,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class DetectionThresholds:
    """Tunable detection thresholds (not safety policy)."""

    min_tasks: int = 5
    lookback_tasks: int = 20
    lookback_days: int | None = None
    confidence_min: float = 0.6
    failure_rate_trigger: float = 0.4
    min_category_failures: int = 3
    weakness_failure_share: float = 0.6
    time_regression_factor: float = 1.5
    quality_decline: float = 0.15
    min_trend_samples: int = 6
    min_tasks_with_tools: int = 5
    min_tool_uses: int = 3
    tool_success_ceiling: float = 0.6


def _halves(values: list[Any]) -> tuple[list[Any], list[Any]]:
    """Split a newest-first list into (recent, older)."""
    mid = len(values) // 2
    return values[:mid], values[mid:]


def summarize_performance(tasks: list[TaskHistoryEntry]) -> PerformanceSnapshot:
    """Performance snapshot over tasks given newest first."""
    if not tasks:
        return PerformanceSnapshot()

    qualities = [t.quality_score for t in tasks if t.quality_score is not None]
    durations = [t.duration_seconds for t in tasks if t.duration_seconds]
    estimated = [
        (t.duration_seconds - t.estimated_seconds) / t.estimated_seconds
        for t in tasks
        if t.duration_seconds and t.estimated_seconds
    ]

    trend = Trend.INSUFFICIENT_DATA
    if len(tasks) >= 4:
        recent, older = _halves(tasks)
        delta = (
            sum(t.success for t in recent) / len(recent)
            - sum(t.success for t in older) / len(older)
        )
        if delta > 0.1:
            trend = Trend.IMPROVING
        elif delta < -0.1:
            trend = Trend.DECLINING
        else:
            trend = Trend.STABLE

    return PerformanceSnapshot(
        sample_size=len(tasks),
        success_rate=sum(t.success for t in tasks) / len(tasks),
        avg_quality=mean(qualities) if qualities else None,
        avg_duration_seconds=mean(durations) if durations else None,
        variance=mean(estimated) if estimated else None,
        trend=trend,
    )


class PatternDetector:
    """Detects repeated failures, weaknesses and regressions in task history."""

    def __init__(
        self,
        repository: GovernanceRepository,
        thresholds: DetectionThresholds | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repo = repository
        self.thresholds = thresholds or DetectionThresholds()
        self._bus = event_bus

    # ── Detection ────────────────────────────────────────────────

    async def load_window(self, agent_role: str) -> list[TaskHistoryEntry]:
        since = None
        if self.thresholds.lookback_days:
            since = utcnow() - timedelta(days=self.thresholds.lookback_days)
        return await self._repo.recent_tasks(
            agent_role, limit=self.thresholds.lookback_tasks, since=since,
        )

    @operation
    async def detect_patterns(self, agent_role: str, log: bool = True) -> Result:
        """Detect significant patterns for one agent.

        Fewer tasks than the minimum sample returns an empty list with an
        "insufficient data" message. Logging failures are reported in the
        log but never drop the detected patterns.
        """
        await self._repo.require_agent(agent_role)
        tasks = await self.load_window(agent_role)
        if len(tasks) < self.thresholds.min_tasks:
            return Result(
                data=[],
                message=(
                    f"Insufficient data: {len(tasks)} tasks, "
                    f"need {self.thresholds.min_tasks}"
                ),
            )

        patterns = self.analyze(tasks)

        if log:
            for pattern in patterns:
                logged = await self.log_pattern(agent_role, pattern, task_window=len(tasks))
                if logged.ok:
                    pattern.log_id = logged.data.id
                else:
                    logger.warning(
                        "Could not log %s pattern for %s: %s",
                        pattern.type.value, agent_role, logged.error.message,
                    )

        if patterns and self._bus:
            await self._bus.emit("review.patterns_detected", {
                "agent_role": agent_role,
                "patterns": [p.type.value for p in patterns],
            }, source="pattern_detector")

        return Result(data=patterns, message=f"{len(patterns)} patterns from {len(tasks)} tasks")

    def analyze(self, tasks: list[TaskHistoryEntry]) -> list[Pattern]:
        """Run every detector over a newest-first task list."""
        found: list[Pattern] = list(self.detect_repeated_failure(tasks))
        for detector in (
            self.detect_category_weakness,
            self.detect_time_regression,
            self.detect_quality_decline,
            self.detect_tool_inefficiency,
        ):
            pattern = detector(tasks)
            if pattern is not None:
                found.append(pattern)

        significant = [p for p in found if p.confidence >= self.thresholds.confidence_min]
        significant.sort(key=lambda p: p.confidence, reverse=True)
        return significant

    def detect_repeated_failure(self, tasks: list[TaskHistoryEntry]) -> list[Pattern]:
        by_category: dict[str, list[TaskHistoryEntry]] = defaultdict(list)
        for task in tasks:
            by_category[task.category].append(task)

        total_failures = sum(1 for t in tasks if not t.success)
        patterns = []
        for category, cat_tasks in by_category.items():
            failures = [t for t in cat_tasks if not t.success]
            rate = len(failures) / len(cat_tasks)
            if len(failures) < self.thresholds.min_category_failures:
                continue
            if rate < self.thresholds.failure_rate_trigger:
                continue

            frequency = len(failures) / len(tasks)
            reasons = Counter(t.failure_reason for t in failures if t.failure_reason)
            common = [r for r, _ in reasons.most_common(5)]
            patterns.append(Pattern(
                type=PatternType.REPEATED_FAILURE,
                category=category,
                confidence=min(0.9, 0.5 + frequency * 0.5),
                data={
                    "failure_rate": round(rate, 3),
                    "total_failures": total_failures,
                    "total_tasks": len(tasks),
                    "primary_category": category,
                    "category_failure_count": len(failures),
                    "common_reasons": common,
                },
                suggested_action=(
                    f"Improve handling of {category} tasks. "
                    f"Common issues: {', '.join(common[:2]) or 'unspecified'}"
                ),
            ))
        return patterns

    def detect_category_weakness(self, tasks: list[TaskHistoryEntry]) -> Pattern | None:
        categories = {t.category for t in tasks}
        failures = [t for t in tasks if not t.success]
        if len(categories) < 2 or len(failures) < 2:
            return None

        counts = Counter(t.category for t in failures)
        weakest, weak_failures = counts.most_common(1)[0]
        share = weak_failures / len(failures)
        if weak_failures < 2 or share < self.thresholds.weakness_failure_share:
            return None

        cat_tasks = [t for t in tasks if t.category == weakest]
        qualities = [t.quality_score for t in cat_tasks if t.quality_score is not None]
        success_rate = sum(t.success for t in cat_tasks) / len(cat_tasks)
        return Pattern(
            type=PatternType.CATEGORY_WEAKNESS,
            category=weakest,
            confidence=min(0.85, 0.4 + share * 0.5),
            data={
                "weak_category": weakest,
                "category_failure_share": round(share, 3),
                "category_success_rate": round(success_rate, 3),
                "category_avg_quality": round(mean(qualities), 3) if qualities else None,
                "category_tasks": len(cat_tasks),
                "categories_seen": sorted(categories),
            },
            suggested_action=(
                f"Focus improvement on {weakest} tasks. "
                f"Success rate: {success_rate * 100:.0f}%"
            ),
        )

    def detect_time_regression(self, tasks: list[TaskHistoryEntry]) -> Pattern | None:
        timed = [t for t in tasks if t.duration_seconds]
        if len(timed) < self.thresholds.min_trend_samples:
            return None

        recent, older = _halves(timed)
        recent_avg = mean(t.duration_seconds for t in recent)
        older_avg = mean(t.duration_seconds for t in older)
        if older_avg <= 0:
            return None
        factor = recent_avg / older_avg
        if factor < self.thresholds.time_regression_factor:
            return None

        by_category: dict[str, list[float]] = defaultdict(list)
        for t in recent:
            by_category[t.category].append(t.duration_seconds)
        slowest, times = max(by_category.items(), key=lambda kv: mean(kv[1]))

        return Pattern(
            type=PatternType.TIME_REGRESSION,
            category=slowest,
            confidence=min(0.9, (factor - 1) * 0.5 + 0.4),
            data={
                "recent_avg_seconds": round(recent_avg),
                "baseline_avg_seconds": round(older_avg),
                "regression_factor": round(factor, 2),
                "slowest_category": slowest,
                "slowest_avg_seconds": round(mean(times)),
            },
            suggested_action=(
                f"Optimize {slowest} task execution. Recent tasks taking "
                f"{factor:.1f}x longer than baseline."
            ),
        )

    def detect_quality_decline(self, tasks: list[TaskHistoryEntry]) -> Pattern | None:
        scored = [t for t in tasks if t.quality_score is not None]
        if len(scored) < self.thresholds.min_trend_samples:
            return None

        recent, older = _halves(scored)
        recent_avg = mean(t.quality_score for t in recent)
        older_avg = mean(t.quality_score for t in older)
        decline = older_avg - recent_avg
        if decline < self.thresholds.quality_decline:
            return None

        lowest = sorted(recent, key=lambda t: t.quality_score)[:3]
        return Pattern(
            type=PatternType.QUALITY_DECLINE,
            confidence=min(0.9, decline * 2 + 0.4),
            data={
                "recent_avg_quality": round(recent_avg, 2),
                "baseline_avg_quality": round(older_avg, 2),
                "decline_amount": round(decline, 2),
                "lowest_quality_tasks": [
                    {"task_id": t.task_id, "quality": t.quality_score, "category": t.category}
                    for t in lowest
                ],
            },
            suggested_action=(
                f"Improve quality focus. Recent work averaging {recent_avg:.2f} "
                f"vs baseline {older_avg:.2f}."
            ),
        )

    def detect_tool_inefficiency(self, tasks: list[TaskHistoryEntry]) -> Pattern | None:
        with_tools = [t for t in tasks if t.tools_used]
        if len(with_tools) < self.thresholds.min_tasks_with_tools:
            return None

        usage: dict[str, dict[str, float]] = defaultdict(
            lambda: {"count": 0, "success": 0, "failure": 0, "time": 0.0}
        )
        for task in with_tools:
            for tool in task.tools_used:
                stats = usage[tool]
                stats["count"] += 1
                stats["success" if task.success else "failure"] += 1
                stats["time"] += task.duration_seconds or 0.0

        candidates = [
            (stats["success"] / stats["count"], tool)
            for tool, stats in usage.items()
            if stats["count"] >= self.thresholds.min_tool_uses
        ]
        if not candidates:
            return None
        rate, tool = min(candidates)
        if rate > self.thresholds.tool_success_ceiling:
            return None

        stats = usage[tool]
        return Pattern(
            type=PatternType.TOOL_INEFFICIENCY,
            category=tool,
            confidence=min(0.8, (self.thresholds.tool_success_ceiling - rate) * 2 + 0.5),
            data={
                "inefficient_tool": tool,
                "tool_success_rate": round(rate, 2),
                "tool_usage_count": int(stats["count"]),
                "tool_failures": int(stats["failure"]),
                "avg_time_with_tool": (
                    round(stats["time"] / stats["count"]) if stats["time"] else None
                ),
            },
            suggested_action=(
                f"Reconsider use of {tool}. Only {rate * 100:.0f}% success rate when used."
            ),
        )

    # ── Pattern log ──────────────────────────────────────────────

    @operation
    async def log_pattern(
        self, agent_role: str, pattern: Pattern, task_window: int | None = None,
    ) -> PatternLogEntry:
        entry = PatternLogEntry(
            agent_role=agent_role,
            pattern_type=pattern.type,
            category=pattern.category,
            confidence=pattern.confidence,
            data=pattern.data,
            task_window=task_window,
        )
        return await self._repo.insert_pattern_log(entry)

    @operation
    async def link_pattern_to_amendment(self, log_id: str, amendment_id: str) -> PatternLogEntry:
        entry = await self._repo.get_pattern_log(log_id)
        entry.amendment_id = amendment_id
        return await self._repo.save_pattern_log(entry)

    @operation
    async def dismiss_pattern(self, log_id: str, reason: str) -> PatternLogEntry:
        entry = await self._repo.get_pattern_log(log_id)
        entry.dismissed = True
        entry.dismissed_reason = reason
        return await self._repo.save_pattern_log(entry)

    @operation
    async def get_recent_patterns(self, agent_role: str, days: int = 7) -> list[PatternLogEntry]:
        since = utcnow() - timedelta(days=days)
        return await self._repo.list_pattern_log(agent_role, since=since)
