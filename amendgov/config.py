"""Global configuration — loaded from environment variables.

Only tunables live here. The safety limits (active-amendment cap,
auto-revert streak, evaluation timeout) are in amendgov.policy.rules and
are not part of this settings object.
"""

from pathlib import Path

from pydantic_settings import BaseSettings

DEFAULT_ROLES = [
    "ceo", "cfo", "cto", "coo", "cmo", "chro", "clo", "ciso",
    "cos", "cco", "cpo", "cro", "devops", "data", "qa",
]


class GovSettings(BaseSettings):
    db_path: Path = Path(".amendgov/amendgov.db")
    log_level: str = "INFO"
    store_timeout_seconds: float = 5.0

    # Known agent roles, bootstrapped on first start
    roles: list[str] = DEFAULT_ROLES

    # Approval
    approval_mode: str = "autonomous"  # "autonomous", "strict", "trust"
    trust_min_proven_amendments: int = 5
    trust_min_success_rate: float = 0.8
    trust_min_active_days: int = 30

    # Pattern detection
    pattern_lookback_tasks: int = 20
    pattern_lookback_days: int | None = None
    min_tasks_for_analysis: int = 5
    pattern_confidence_min: float = 0.6

    # Evaluation
    evaluation_window: int = 5
    proven_threshold: float = 0.6

    # Knowledge cache; disable for request-scoped recomputation
    knowledge_cache_enabled: bool = True

    # Baking
    baking_threshold: int = 10
    baking_min_successful_evals: int = 5
    baking_min_success_rate: float = 0.6

    # Scheduler
    review_interval_hours: int = 24
    review_initial_delay: int = 0

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8430

    model_config = {"env_prefix": "AMENDGOV_"}


settings = GovSettings()
