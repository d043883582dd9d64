"""
Engine Configuration

Runtime settings for the approval routing and budget ledger engine:
- Storage location
- Lock timeouts and retry backoff
- Budget alert thresholds
- Escalation target and timers
- Outbound integrations (Slack webhook, master-data service)

Everything is read from environment variables so the same build runs in
tests, local development and production.
"""

import logging
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from spendflow.services.errors import ConfigError

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ConfigError(name, f"Expected a number, got '{raw}'")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(name, f"Expected an integer, got '{raw}'")


@dataclass
class EngineSettings:
    """
    Settings for one engine instance.

    - lock_timeout_seconds: max wait per lock attempt
    - lock_retry_attempts: attempts before signalling Busy
    - lock_backoff_seconds: base delay, doubled after each failed attempt
    - budget_warning_threshold / budget_critical_threshold: utilization
      ratios ((committed + spent) / planned) that trigger budget alerts
    - escalation_sweep_seconds: how often the API process fires due
      escalations; 0 turns the sweep off
    """
    db_path: str = "spendflow.db"
    log_level: str = "INFO"
    use_json_logs: bool = False

    lock_timeout_seconds: float = 0.5
    lock_retry_attempts: int = 3
    lock_backoff_seconds: float = 0.05

    budget_warning_threshold: float = 0.8
    budget_critical_threshold: float = 1.0

    escalation_target_id: str = "finance"
    escalation_timers_enabled: bool = False
    escalation_sweep_seconds: float = 60.0

    slack_webhook_url: Optional[str] = None
    master_data_url: Optional[str] = None

    def __post_init__(self):
        if self.lock_timeout_seconds <= 0:
            raise ConfigError("LOCK_TIMEOUT_SECONDS", "Must be greater than zero")
        if self.lock_retry_attempts < 1:
            raise ConfigError("LOCK_RETRY_ATTEMPTS", "Must be at least 1")
        if self.escalation_sweep_seconds < 0:
            raise ConfigError("ESCALATION_SWEEP_SECONDS", "Must be zero or positive")
        if not (0 < self.budget_warning_threshold <= self.budget_critical_threshold):
            raise ConfigError(
                "BUDGET_WARNING_THRESHOLD",
                "Thresholds must be: 0 < warning <= critical",
            )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("slack_webhook_url"):
            data["slack_webhook_url"] = "***"
        return data


def load_settings() -> EngineSettings:
    """Build settings from the environment."""
    settings = EngineSettings(
        db_path=os.getenv("SPENDFLOW_DB_PATH", "spendflow.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        use_json_logs=_env_bool("USE_JSON_LOGS", False),
        lock_timeout_seconds=_env_float("LOCK_TIMEOUT_SECONDS", 0.5),
        lock_retry_attempts=_env_int("LOCK_RETRY_ATTEMPTS", 3),
        lock_backoff_seconds=_env_float("LOCK_BACKOFF_SECONDS", 0.05),
        budget_warning_threshold=_env_float("BUDGET_WARNING_THRESHOLD", 0.8),
        budget_critical_threshold=_env_float("BUDGET_CRITICAL_THRESHOLD", 1.0),
        escalation_target_id=os.getenv("ESCALATION_TARGET_ID", "finance"),
        escalation_timers_enabled=_env_bool("ESCALATION_TIMERS_ENABLED", False),
        escalation_sweep_seconds=_env_float("ESCALATION_SWEEP_SECONDS", 60.0),
        slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL") or None,
        master_data_url=os.getenv("MASTER_DATA_URL") or None,
    )
    logger.debug("Loaded engine settings: %s", settings.to_dict())
    return settings
