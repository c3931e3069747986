"""Exception hierarchy for workspace configuration."""

from __future__ import annotations


class ConfigError(Exception):
    """Invalid threshold or channel input; the whole update is rejected."""

    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors: dict[str, str] = errors or {}


class ValidationError(ConfigError):
    """Malformed rule or channel definition, surfaced as a rejected request."""


class ChannelNotFoundError(LookupError):
    """No channel with the given id exists in the workspace."""
