"""Exception hierarchy for metrics providers."""

from __future__ import annotations


class MetricsUnavailable(Exception):
    """Base exception for a failed metrics fetch. Never a clean observation."""


class MetricsConnectionError(MetricsUnavailable):
    """Failed to reach the monitored server's management endpoint."""


class MetricsAuthError(MetricsUnavailable):
    """Credentials were rejected by the monitored server."""


class MetricsTimeoutError(MetricsUnavailable, TimeoutError):
    """The management endpoint did not answer in time."""


def is_transient_metrics_error(exc: BaseException) -> bool:
    """Auth failures will not fix themselves on retry; everything else might."""
    return not isinstance(exc, MetricsAuthError)
