"""Pure threshold evaluation: snapshots in, violation events out."""

from __future__ import annotations

from collections.abc import Iterable

from src.core.types import (
    Comparator,
    MetricSnapshot,
    MonitoredKey,
    Severity,
    ThresholdConfig,
    ThresholdRule,
    ViolationEvent,
)


def _crosses(value: float, threshold: float, comparator: Comparator) -> bool:
    if comparator == Comparator.GT:
        return value >= threshold
    return value <= threshold


def classify(value: float, rule: ThresholdRule) -> tuple[Severity, float] | None:
    """Return ``(severity, threshold)`` for the worst level *value* crosses."""
    if rule.critical is not None and _crosses(value, rule.critical, rule.comparator):
        return Severity.CRITICAL, rule.critical
    if rule.warning is not None and _crosses(value, rule.warning, rule.comparator):
        return Severity.WARNING, rule.warning
    if rule.info is not None and _crosses(value, rule.info, rule.comparator):
        return Severity.INFO, rule.info
    return None


def evaluate(
    snapshots: Iterable[MetricSnapshot], config: ThresholdConfig
) -> list[ViolationEvent]:
    """One event per violating metric, in snapshot order.

    Null readings and metrics without a rule are skipped.
    """
    events: list[ViolationEvent] = []
    for snap in snapshots:
        if snap.value is None:
            continue
        rule = config.rule_for(snap.metric_name)
        if rule is None:
            continue
        hit = classify(snap.value, rule)
        if hit is None:
            continue
        severity, threshold = hit
        events.append(
            ViolationEvent(
                key=snap.key,
                metric_name=snap.metric_name,
                severity=severity,
                value=snap.value,
                threshold=threshold,
            )
        )
    return events


def observed_keys(snapshots: Iterable[MetricSnapshot]) -> set[MonitoredKey]:
    """Keys with at least one non-null reading."""
    return {snap.key for snap in snapshots if snap.value is not None}


def reported_keys(snapshots: Iterable[MetricSnapshot]) -> set[MonitoredKey]:
    """Every key present in the snapshot, null readings included."""
    return {snap.key for snap in snapshots}
