"""MetricsProvider interface consumed by the pollers."""

from __future__ import annotations

import abc
import importlib

from src.core.types import MetricSnapshot


class MetricsProvider(abc.ABC):
    """Supplies current metric values for one ``(server, vhost)`` pair.

    Implementations wrap the monitored system's management protocol client.
    ``get_snapshot`` raises a :class:`~src.metrics.exceptions.MetricsUnavailable`
    subclass (connection, auth, timeout) on failure.
    """

    @abc.abstractmethod
    async def get_snapshot(self, server_id: str, vhost: str) -> list[MetricSnapshot]:
        """Fetch the current snapshot for a server/vhost."""

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


def load_provider(path: str) -> MetricsProvider:
    """Instantiate a provider from a ``package.module:factory`` import path."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"provider path must look like 'module:factory', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    provider = factory()
    if not isinstance(provider, MetricsProvider):
        raise TypeError(f"{path} did not return a MetricsProvider")
    return provider
