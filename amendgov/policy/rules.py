"""Hardcoded governance policy.

These limits and patterns bound what self-modification may do. They are
module constants, frozen at import, and are not read from settings,
the environment or the store. Nothing in amendgov.governance.engine
imports this module: amendment generation cannot reach the policy that
judges it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class SafetyLimits:
    max_active_amendments: int = 10
    auto_revert_failures: int = 3
    evaluation_timeout_hours: int = 168
    min_evaluation_tasks: int = 5


SAFETY_LIMITS = SafetyLimits()


PROTECTED_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"checkout",
        r"billing",
        r"payment",
        r"subscribe",
        r"credit.?card",
        r"cvv",
        r"purchase",
        r"buy.?now",
        r"escalate.*authority",
        r"bypass.*approval",
        r"override.*decision",
        r"disable.*safety",
        r"remove.*constraint",
        r"modify.*protected",
    )
)


# ── Escalation conditions ────────────────────────────────────────


@dataclass(frozen=True)
class EscalationThresholds:
    consecutive_failures: int = 3
    cross_agent_min_agents: int = 3
    cross_agent_min_failures: int = 2  # per agent
    cross_agent_window_hours: int = 1
    keyword_matches: int = 2


ESCALATION_THRESHOLDS = EscalationThresholds()

SKILLS_LAYER_KEYWORDS: tuple[str, ...] = (
    "skill", "capability", "ability", "competency",
    "can_do", "cannot_do", "authority", "permission",
)
SKILLS_LAYER_MARKERS: tuple[str, ...] = ("layer_2", "skills_layer", "modify_skill")

PERSONA_LAYER_KEYWORDS: tuple[str, ...] = (
    "persona", "identity", "core_values", "fundamental",
    "base_behavior", "immutable", "character", "personality",
)
PERSONA_LAYER_MARKERS: tuple[str, ...] = ("layer_1", "persona_layer", "base_knowledge")


# Opposing directives for the contradiction heuristic
CONTRADICTION_PAIRS: tuple[tuple[str, str], ...] = (
    ("increase", "decrease"),
    ("faster", "slower"),
    ("more", "less"),
    ("always", "never"),
    ("enable", "disable"),
    ("add", "remove"),
)
CONTRADICTION_MIN_SHARED_WORD = 5


def matches_protected(text: str) -> list[str]:
    """Return the protected regexes that match anywhere in text."""
    return [p.pattern for p in PROTECTED_PATTERNS if p.search(text)]


# ── Supervisor self-monitoring ───────────────────────────────────


@dataclass(frozen=True)
class SelfMonitorLimits:
    alert_threshold: float = 0.5
    warning_margin: float = 0.1
    window_size: int = 20
    min_amendments: int = 10
    # Recent half must trail the previous half by more than this
    rapid_decline_drop: float = 0.3
    trend_delta: float = 0.1
    breakdown_window: int = 100


SELF_MONITOR_LIMITS = SelfMonitorLimits()
