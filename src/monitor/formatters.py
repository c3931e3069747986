"""Pure functions that turn alert transitions into notification payloads.

``format_transition`` / ``format_summary`` build the channel-independent
:class:`NotificationPayload`; the ``render_*`` helpers produce the body
each channel kind sends.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlencode

from src.core.types import (
    MONITORING_DEGRADED_CATEGORY,
    AlertInstance,
    AlertTransitionEvent,
    Severity,
    TransitionType,
)
from src.monitor.types import NotificationPayload

WEBHOOK_VERSION = "v1"
SLACK_MAX_ATTACHMENTS = 10

_CATEGORY_TITLES: dict[str, str] = {
    "node": "Node health",
    "memory": "Memory usage",
    "disk": "Disk space",
    "connection": "Connection usage",
    "performance": "Performance",
    "queue": "Queue backlog",
    MONITORING_DEGRADED_CATEGORY: "Monitoring degraded",
}

_TRANSITION_LABELS: dict[TransitionType, str] = {
    TransitionType.FIRED: "FIRED",
    TransitionType.ESCALATED: "ESCALATED",
    TransitionType.RESOLVED: "RESOLVED",
}

# Slack attachment colours keyed by severity.
_SLACK_COLORS: dict[Severity, str] = {
    Severity.CRITICAL: "danger",
    Severity.WARNING: "warning",
    Severity.INFO: "good",
}

# Discord embed colours keyed by severity.
_DISCORD_COLORS: dict[Severity, int] = {
    Severity.INFO: 0x2ECC71,     # green
    Severity.WARNING: 0xF39C12,  # orange
    Severity.CRITICAL: 0xE74C3C, # red
}
_DISCORD_RESOLVED_COLOR = 0x95A5A6  # grey


def _fmt_value(value: float | None) -> str:
    if value is None:
        return "n/a"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def alert_title(alert: AlertInstance) -> str:
    """Human title for an alert, e.g. ``Memory usage on rabbit@node-1``."""
    label = _CATEGORY_TITLES.get(alert.key.category, alert.key.category)
    return f"{label} on {alert.key.resource_ref}"


def alert_description(alert: AlertInstance) -> str:
    metrics = ", ".join(alert.violating_metrics) or "n/a"
    return (
        f"{metrics}: current {_fmt_value(alert.current_value)}, "
        f"threshold {_fmt_value(alert.threshold_value)}"
    )


def severity_counts(alerts: Sequence[AlertInstance]) -> dict[str, int]:
    counts = Counter(a.severity for a in alerts)
    return {
        "total": len(alerts),
        "critical": counts[Severity.CRITICAL],
        "warning": counts[Severity.WARNING],
        "info": counts[Severity.INFO],
    }


# ── Payloads ────────────────────────────────────────────────────


def format_transition(event: AlertTransitionEvent) -> NotificationPayload:
    """Convert one lifecycle transition to a NotificationPayload."""
    alert = event.alert
    fields: dict[str, str] = {
        "server": alert.key.server_id,
        "vhost": alert.key.vhost,
        "category": alert.key.category,
        "resource": alert.key.resource_ref,
        "severity": alert.severity.value,
        "current_value": _fmt_value(alert.current_value),
        "threshold": _fmt_value(alert.threshold_value),
    }
    if event.transition == TransitionType.ESCALATED and event.previous_severity:
        fields["previous_severity"] = event.previous_severity.value
    if event.transition == TransitionType.RESOLVED:
        duration = alert.duration_secs
        if duration is not None:
            fields["duration_secs"] = str(int(duration))
        if alert.note:
            fields["note"] = alert.note

    label = _TRANSITION_LABELS[event.transition]
    return NotificationPayload(
        workspace_id=alert.key.workspace_id,
        server_id=alert.key.server_id,
        vhost=alert.key.vhost,
        event=f"alert.{event.transition.value}",
        severity=alert.severity,
        title=f"[{label}] {alert_title(alert)}",
        body=alert_description(alert),
        fields=fields,
        transition=event.transition,
        alerts=[alert],
        timestamp=event.occurred_at,
    )


def format_summary(events: Sequence[AlertTransitionEvent]) -> NotificationPayload:
    """Fold rate-limited transitions into one summary payload."""
    if not events:
        raise ValueError("cannot summarise an empty batch")
    alerts = [e.alert for e in events]
    servers = sorted({a.key.server_id for a in alerts})
    worst = max((a.severity for a in alerts), key=lambda s: s.rank)
    by_transition = Counter(e.transition.value for e in events)

    fields = {f"{name}_count": str(count) for name, count in sorted(by_transition.items())}
    fields["servers"] = ", ".join(servers)
    body = ", ".join(
        f"{count} {name}" for name, count in sorted(by_transition.items())
    )
    return NotificationPayload(
        workspace_id=events[0].workspace_id,
        server_id=servers[0] if len(servers) == 1 else "*",
        vhost=alerts[0].key.vhost,
        event="alert.summary",
        severity=worst,
        title=f"{len(events)} alert notification{'s' if len(events) != 1 else ''} "
        "held back by rate limit",
        body=body,
        fields=fields,
        alerts=alerts,
        suppressed=len(events),
        timestamp=max(e.occurred_at for e in events),
    )


# ── Channel renderers ───────────────────────────────────────────


def render_webhook(payload: NotificationPayload) -> dict[str, Any]:
    """Versioned JSON body for generic webhooks."""
    body: dict[str, Any] = {
        "version": WEBHOOK_VERSION,
        "event": payload.event,
        "timestamp": payload.timestamp.isoformat(),
        "workspace": {"id": payload.workspace_id},
        "server": {"id": payload.server_id},
        "alerts": [a.to_wire() for a in payload.alerts],
        "summary": severity_counts(payload.alerts),
    }
    if payload.transition is not None:
        body["transition"] = payload.transition.value
    if payload.is_summary:
        body["suppressed"] = payload.suppressed
    return body


def _alerts_url(frontend_url: str, payload: NotificationPayload) -> str | None:
    if not frontend_url or payload.server_id == "*":
        return None
    vhosts = Counter(a.key.vhost for a in payload.alerts)
    params = {"serverId": payload.server_id}
    if vhosts:
        params["vhost"] = vhosts.most_common(1)[0][0]
    return f"{frontend_url.rstrip('/')}/alerts?{urlencode(params)}"


def _slack_attachment(alert: AlertInstance) -> dict[str, Any]:
    fields = [
        {"title": "Category", "value": alert.key.category, "short": True},
        {"title": "Source", "value": alert.key.resource_ref, "short": True},
        {"title": "Virtual Host", "value": alert.key.vhost, "short": True},
    ]
    if alert.current_value is not None:
        fields.append(
            {"title": "Current Value", "value": _fmt_value(alert.current_value), "short": True}
        )
    if alert.threshold_value is not None:
        fields.append(
            {"title": "Threshold", "value": _fmt_value(alert.threshold_value), "short": True}
        )
    return {
        "color": _SLACK_COLORS[alert.severity],
        "title": f"{alert.severity.value.upper()}: {alert_title(alert)}",
        "text": alert_description(alert),
        "fields": fields,
    }


def render_slack(payload: NotificationPayload, frontend_url: str = "") -> dict[str, Any]:
    """Incoming-webhook message with one attachment per alert (capped)."""
    counts = severity_counts(payload.alerts)
    details = ", ".join(
        f"{counts[name]} {name}"
        for name in ("critical", "warning", "info")
        if counts[name]
    )
    attachments = [
        {
            "color": _SLACK_COLORS[payload.severity],
            "title": payload.title,
            "text": details,
            "fields": [],
        }
    ]
    attachments.extend(
        _slack_attachment(a) for a in payload.alerts[:SLACK_MAX_ATTACHMENTS]
    )
    extra = len(payload.alerts) - SLACK_MAX_ATTACHMENTS
    if extra > 0:
        attachments.append(
            {
                "color": "#cccccc",
                "title": f"... and {extra} more alert{'s' if extra != 1 else ''}",
                "text": "",
                "fields": [],
            }
        )

    blocks: list[dict[str, Any]] = []
    url = _alerts_url(frontend_url, payload)
    if url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View Alerts in Dashboard"},
                        "url": url,
                        "style": "primary",
                    }
                ],
            }
        )
    return {
        "text": f"*{payload.title}* on *{payload.server_id}*",
        "username": "Queuewatch Alerts",
        "icon_emoji": ":rabbit:",
        "blocks": blocks,
        "attachments": attachments,
    }


def render_discord(payload: NotificationPayload) -> dict[str, Any]:
    """Discord webhook body with a colour-coded embed."""
    if payload.transition == TransitionType.RESOLVED:
        color = _DISCORD_RESOLVED_COLOR
    else:
        color = _DISCORD_COLORS.get(payload.severity, _DISCORD_RESOLVED_COLOR)
    embed: dict[str, Any] = {
        "title": payload.title,
        "color": color,
        "timestamp": payload.timestamp.isoformat(),
    }
    if payload.body:
        embed["description"] = payload.body
    if payload.fields:
        embed["fields"] = [
            {"name": k, "value": v, "inline": True} for k, v in payload.fields.items()
        ]
    return {"embeds": [embed]}


def render_email(payload: NotificationPayload) -> tuple[str, str]:
    """Return ``(subject, plain-text body)``."""
    subject = f"[{payload.severity.value.upper()}] {payload.title}"
    lines = [payload.title, ""]
    if payload.body:
        lines.extend([payload.body, ""])
    lines.extend(f"{k}: {v}" for k, v in payload.fields.items())
    if payload.is_summary:
        lines.append("")
        lines.extend(
            f"- {a.severity.value.upper()} {alert_title(a)} ({a.key.server_id})"
            for a in payload.alerts
        )
    return subject, "\n".join(lines)
