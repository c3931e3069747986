"""Default threshold rules applied when a workspace has no override."""

from __future__ import annotations

from src.core.types import Comparator, ThresholdConfig, ThresholdRule
from src.metrics import snapshots as m

# (warning, critical, comparator); disk and utilisation alert on low values.
_DEFAULTS: dict[str, tuple[float | None, float | None, Comparator]] = {
    m.MEMORY_USED_PCT: (80, 95, Comparator.GT),
    m.DISK_FREE_PCT: (15, 10, Comparator.LT),
    m.FD_USED_PCT: (80, 90, Comparator.GT),
    m.SOCKETS_USED_PCT: (80, 90, Comparator.GT),
    m.PROCESSES_USED_PCT: (80, 90, Comparator.GT),
    m.RUN_QUEUE: (10, 20, Comparator.GT),
    m.CONNECTIONS_USED_PCT: (80, 95, Comparator.GT),
    m.QUEUE_MESSAGES: (10_000, 50_000, Comparator.GT),
    m.QUEUE_UNACKED: (1_000, 5_000, Comparator.GT),
    m.QUEUE_WITHOUT_CONSUMERS: (1, None, Comparator.GT),
    m.CONSUMER_UTILIZATION_PCT: (10, None, Comparator.LT),
    m.NODE_DOWN: (None, 1, Comparator.GT),
    m.NETWORK_PARTITIONS: (None, 1, Comparator.GT),
    m.MEMORY_ALARM: (None, 1, Comparator.GT),
    m.DISK_ALARM: (None, 1, Comparator.GT),
    # Stale: more than 100 ready messages with consumers but no deliveries.
    m.QUEUE_STALE_MESSAGES: (101, None, Comparator.GT),
    m.QUEUE_ACCUMULATION_PCT: (50, None, Comparator.GT),
}


# Informational rules; an empty queue with no consumers idle for a day.
_INFO_DEFAULTS: dict[str, float] = {
    m.QUEUE_IDLE_HOURS: 24,
}


def default_rules(hysteresis_cycles: int = 2) -> dict[str, ThresholdRule]:
    rules = {
        name: ThresholdRule(
            warning=warning,
            critical=critical,
            comparator=comparator,
            hysteresis_cycles=hysteresis_cycles,
        )
        for name, (warning, critical, comparator) in _DEFAULTS.items()
    }
    for name, info in _INFO_DEFAULTS.items():
        rules[name] = ThresholdRule(info=info, hysteresis_cycles=hysteresis_cycles)
    return rules


def default_thresholds(workspace_id: str, hysteresis_cycles: int = 2) -> ThresholdConfig:
    return ThresholdConfig(
        workspace_id=workspace_id, rules=default_rules(hysteresis_cycles)
    )
