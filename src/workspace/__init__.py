"""Per-workspace configuration: thresholds, notification settings, channels."""

from src.workspace.config_store import ConfigBackend, ConfigStore, InMemoryConfigBackend
from src.workspace.defaults import default_rules, default_thresholds
from src.workspace.exceptions import ChannelNotFoundError, ConfigError, ValidationError

__all__ = [
    "ChannelNotFoundError",
    "ConfigBackend",
    "ConfigError",
    "ConfigStore",
    "InMemoryConfigBackend",
    "ValidationError",
    "default_rules",
    "default_thresholds",
]
