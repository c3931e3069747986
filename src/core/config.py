"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, SecretStr

from src.core.retry import RetryPolicy

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
CONFIG_ENV_VAR = "QUEUEWATCH_CONFIG"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    # Optional file that also receives every decision_log record.
    decision_log_path: str = ""


class EngineConfig(BaseModel):
    """Alert lifecycle configuration."""

    default_hysteresis_cycles: int = 2
    degraded_after_failures: int = 5
    cas_max_attempts: int = 3


class PollerConfig(BaseModel):
    """Polling cadence and metrics-fetch retry policy."""

    default_interval_secs: float = 15.0
    # Interval per resource type of a poll target ("cluster", "queue", "node").
    intervals: dict[str, float] = {
        "cluster": 15.0,
        "node": 15.0,
        "queue": 10.0,
    }
    fetch_retry: RetryPolicy = RetryPolicy(
        max_attempts=3,
        base_delay_secs=1.0,
        max_delay_secs=10.0,
        attempt_timeout_secs=10.0,
    )

    def interval_for(self, resource_type: str) -> float:
        return self.intervals.get(resource_type, self.default_interval_secs)


class NotificationsConfig(BaseModel):
    """Outbound notification delivery configuration."""

    delivery_retry: RetryPolicy = RetryPolicy(
        max_attempts=3,
        base_delay_secs=1.0,
        max_delay_secs=8.0,
        attempt_timeout_secs=10.0,
    )
    delivery_budget_secs: float = 30.0
    rate_limit_per_window: int = 10
    rate_limit_window_secs: float = 60.0
    router_partitions: int = 8
    browser_inbox_size: int = 200
    webhook_event_prefix: str = "X-Queuewatch"
    frontend_url: str = ""


class ConfigStoreConfig(BaseModel):
    """Workspace configuration cache."""

    ttl_secs: float = 30.0


class EmailConfig(BaseModel):
    """SMTP settings for email notifications."""

    smtp_host: str = "localhost"
    smtp_port: int = 587
    username: str = ""
    password: SecretStr = SecretStr("")
    use_tls: bool = True
    from_address: str = "alerts@queuewatch.local"


class MetricsConfig(BaseModel):
    """Metrics provider wiring.

    ``provider`` is an import path of the form ``package.module:factory``;
    the factory is called with no arguments and must return a MetricsProvider.
    """

    provider: str = ""
    targets: list[dict[str, str]] = []


class Settings(BaseModel):
    """Root settings container."""

    logging: LoggingConfig = LoggingConfig()
    engine: EngineConfig = EngineConfig()
    poller: PollerConfig = PollerConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    config_store: ConfigStoreConfig = ConfigStoreConfig()
    email: EmailConfig = EmailConfig()
    metrics: MetricsConfig = MetricsConfig()


def _resolve_path(path: str | Path | None) -> Path:
    if path:
        return Path(path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    return Path(env_path) if env_path else _DEFAULT_CONFIG_PATH


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from YAML and cache them globally.

    The file is *path*, else ``$QUEUEWATCH_CONFIG``, else
    ``config/settings.yaml``. A missing or empty file yields the defaults.
    """
    global _settings  # noqa: PLW0603

    config_path = _resolve_path(path)
    raw: Any = None
    if config_path.exists():
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    _settings = Settings.model_validate(raw if isinstance(raw, dict) else {})
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
