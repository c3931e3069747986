"""Pure helpers that turn management-API records into MetricSnapshots.

Node records are cluster-wide; they are keyed under the vhost of the poll
target that observed them. Queue records carry their own vhost.
"""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from typing import Any

from src.core.types import MetricSnapshot, MonitoredKey, utcnow

# ── Metric names ─────────────────────────────────────────────────

NODE_DOWN = "node_down"
NETWORK_PARTITIONS = "network_partitions"
MEMORY_ALARM = "memory_alarm"
DISK_ALARM = "disk_alarm"
MEMORY_USED_PCT = "memory_used_pct"
DISK_FREE_PCT = "disk_free_pct"
FD_USED_PCT = "file_descriptors_used_pct"
SOCKETS_USED_PCT = "sockets_used_pct"
PROCESSES_USED_PCT = "processes_used_pct"
RUN_QUEUE = "run_queue"
CONNECTIONS_USED_PCT = "connections_used_pct"
QUEUE_MESSAGES = "queue_messages"
QUEUE_UNACKED = "queue_messages_unacked"
QUEUE_WITHOUT_CONSUMERS = "queue_messages_without_consumers"
CONSUMER_UTILIZATION_PCT = "consumer_utilization_pct"
QUEUE_STALE_MESSAGES = "queue_stale_messages"
QUEUE_ACCUMULATION_PCT = "queue_accumulation_pct"
QUEUE_IDLE_HOURS = "queue_idle_hours"

# ── Categories ───────────────────────────────────────────────────

CATEGORY_NODE = "node"
CATEGORY_MEMORY = "memory"
CATEGORY_DISK = "disk"
CATEGORY_CONNECTION = "connection"
CATEGORY_PERFORMANCE = "performance"
CATEGORY_QUEUE = "queue"

METRIC_CATEGORIES: dict[str, str] = {
    NODE_DOWN: CATEGORY_NODE,
    NETWORK_PARTITIONS: CATEGORY_NODE,
    MEMORY_ALARM: CATEGORY_MEMORY,
    MEMORY_USED_PCT: CATEGORY_MEMORY,
    DISK_ALARM: CATEGORY_DISK,
    DISK_FREE_PCT: CATEGORY_DISK,
    FD_USED_PCT: CATEGORY_CONNECTION,
    SOCKETS_USED_PCT: CATEGORY_CONNECTION,
    CONNECTIONS_USED_PCT: CATEGORY_CONNECTION,
    PROCESSES_USED_PCT: CATEGORY_PERFORMANCE,
    RUN_QUEUE: CATEGORY_PERFORMANCE,
    CONSUMER_UTILIZATION_PCT: CATEGORY_PERFORMANCE,
    QUEUE_MESSAGES: CATEGORY_QUEUE,
    QUEUE_UNACKED: CATEGORY_QUEUE,
    QUEUE_WITHOUT_CONSUMERS: CATEGORY_QUEUE,
    QUEUE_STALE_MESSAGES: CATEGORY_QUEUE,
    QUEUE_ACCUMULATION_PCT: CATEGORY_PERFORMANCE,
    QUEUE_IDLE_HOURS: CATEGORY_QUEUE,
}


def _pct(used: Any, total: Any) -> float | None:
    if not isinstance(total, (int, float)) or total <= 0:
        return None
    if not isinstance(used, (int, float)):
        return None
    return used / total * 100


def _rate(stats: Mapping[str, Any] | None, name: str) -> float:
    if not stats:
        return 0.0
    details = stats.get(f"{name}_details") or {}
    return float(details.get("rate") or 0.0)


def _snapshot(
    workspace_id: str,
    server_id: str,
    vhost: str,
    resource_ref: str,
    metric_name: str,
    value: float | None,
    observed_at: datetime.datetime,
) -> MetricSnapshot:
    key = MonitoredKey(
        workspace_id=workspace_id,
        server_id=server_id,
        vhost=vhost,
        category=METRIC_CATEGORIES[metric_name],
        resource_ref=resource_ref,
    )
    return MetricSnapshot(
        key=key, metric_name=metric_name, value=value, observed_at=observed_at
    )


def node_snapshots(
    workspace_id: str,
    server_id: str,
    node: Mapping[str, Any],
    vhost: str = "/",
    observed_at: datetime.datetime | None = None,
) -> list[MetricSnapshot]:
    """Snapshots for one node record (``/api/nodes`` shape)."""
    at = observed_at or utcnow()
    name = str(node.get("name", "unknown"))

    disk_free = node.get("disk_free")
    disk_limit = node.get("disk_free_limit")
    disk_free_pct: float | None = None
    if isinstance(disk_free, (int, float)) and disk_free > 0:
        disk_free_pct = _pct(disk_free, disk_limit)

    run_queue = node.get("run_queue")
    values: dict[str, float | None] = {
        NODE_DOWN: 0.0 if node.get("running", True) else 1.0,
        NETWORK_PARTITIONS: float(len(node.get("partitions") or [])),
        MEMORY_ALARM: 1.0 if node.get("mem_alarm") else 0.0,
        DISK_ALARM: 1.0 if node.get("disk_free_alarm") else 0.0,
        MEMORY_USED_PCT: _pct(node.get("mem_used"), node.get("mem_limit")),
        DISK_FREE_PCT: disk_free_pct,
        FD_USED_PCT: _pct(node.get("fd_used"), node.get("fd_total")),
        SOCKETS_USED_PCT: _pct(node.get("sockets_used"), node.get("sockets_total")),
        PROCESSES_USED_PCT: _pct(node.get("proc_used"), node.get("proc_total")),
        RUN_QUEUE: float(run_queue) if isinstance(run_queue, (int, float)) else None,
    }
    return [
        _snapshot(workspace_id, server_id, vhost, name, metric, value, at)
        for metric, value in values.items()
    ]


def _idle_hours(idle_since: Any, now: datetime.datetime) -> float | None:
    # The management API reports idle_since as UTC, with or without an offset.
    if not isinstance(idle_since, str) or not idle_since:
        return None
    try:
        since = datetime.datetime.fromisoformat(idle_since)
    except ValueError:
        return None
    if since.tzinfo is None:
        since = since.replace(tzinfo=datetime.UTC)
    return max((now - since).total_seconds() / 3600, 0.0)


def queue_snapshots(
    workspace_id: str,
    server_id: str,
    queue: Mapping[str, Any],
    observed_at: datetime.datetime | None = None,
) -> list[MetricSnapshot]:
    """Snapshots for one queue record (``/api/queues`` shape).

    Besides the raw counts this derives three activity signals:

    * ``queue_stale_messages``: ready messages on a queue that has consumers
      but no delivery activity, otherwise 0.
    * ``queue_accumulation_pct``: share of the publish rate that is not being
      delivered, once the queue holds more than 1000 messages, otherwise 0.
    * ``queue_idle_hours``: hours since ``idle_since`` for an empty queue
      with no consumers, otherwise 0.
    """
    at = observed_at or utcnow()
    name = str(queue.get("name", "unknown"))
    vhost = str(queue.get("vhost") or "/")

    messages = float(queue.get("messages") or 0)
    ready = float(queue.get("messages_ready") or 0)
    unacked = float(queue.get("messages_unacknowledged") or 0)
    consumers = int(queue.get("consumers") or 0)
    stats = queue.get("message_stats")
    publish_rate = _rate(stats, "publish")
    deliver_rate = _rate(stats, "deliver_get")

    utilization: float | None = None
    if consumers > 0:
        utilization = deliver_rate / publish_rate * 100 if publish_rate > 0 else 100.0

    stale = ready if consumers > 0 and deliver_rate == 0 else 0.0

    accumulation = 0.0
    if publish_rate > 0 and deliver_rate > 0 and messages > 1000:
        accumulation = (publish_rate - deliver_rate) / publish_rate * 100

    idle_hours = 0.0
    if messages == 0 and consumers == 0:
        idle_hours = _idle_hours(queue.get("idle_since"), at) or 0.0

    values: dict[str, float | None] = {
        QUEUE_MESSAGES: messages,
        QUEUE_UNACKED: unacked,
        QUEUE_WITHOUT_CONSUMERS: messages if consumers == 0 else 0.0,
        CONSUMER_UTILIZATION_PCT: utilization,
        QUEUE_STALE_MESSAGES: stale,
        QUEUE_ACCUMULATION_PCT: accumulation,
        QUEUE_IDLE_HOURS: idle_hours,
    }
    return [
        _snapshot(workspace_id, server_id, vhost, name, metric, value, at)
        for metric, value in values.items()
    ]


def connection_snapshots(
    workspace_id: str,
    server_id: str,
    connection_count: int | None,
    connection_limit: int | None,
    vhost: str = "/",
    observed_at: datetime.datetime | None = None,
) -> list[MetricSnapshot]:
    """Connection usage for the whole server."""
    at = observed_at or utcnow()
    value = _pct(connection_count, connection_limit)
    return [
        _snapshot(
            workspace_id, server_id, vhost, "cluster", CONNECTIONS_USED_PCT, value, at
        )
    ]
