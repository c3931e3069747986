"""Notification channels: webhook, Slack, Discord, email and browser delivery.

Each channel delivers one payload to one resolved target and signals
failure by raising a :class:`DeliveryError` subclass; retries and channel
disabling are the dispatcher's job.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import hmac
import json
import smtplib
from collections import deque
from collections.abc import Callable
from email.message import EmailMessage
from typing import Any

import aiohttp
import structlog

from src.core.config import EmailConfig
from src.monitor.exceptions import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
    error_for_status,
)
from src.monitor.formatters import (
    WEBHOOK_VERSION,
    render_discord,
    render_email,
    render_slack,
    render_webhook,
)
from src.monitor.types import DeliveryTarget, NotificationPayload, TargetKind

logger = structlog.get_logger(__name__)


def sign_body(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class NotificationChannel(abc.ABC):
    """Base class for delivery channels, one instance per target kind."""

    kind: TargetKind

    @abc.abstractmethod
    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        """Deliver *payload* to *target*; raise DeliveryError on failure."""

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""
        return None


class HttpChannel(NotificationChannel):
    """Shared POST logic for channels that talk to an HTTP endpoint."""

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> None:
        try:
            session = self._get_session()
            async with session.post(url, data=body, headers=headers) as resp:
                status = resp.status
                if 200 <= status < 300:
                    return
                detail = await resp.text()
        except aiohttp.ClientError as exc:
            raise TransientDeliveryError(f"{type(exc).__name__}: {exc}") from exc
        logger.warning(
            "channel_http_error",
            channel=self.kind.value,
            status=status,
            body=detail[:200],
        )
        raise error_for_status(status, detail)

    async def _post_json(self, url: str, data: dict[str, Any]) -> None:
        await self._post(
            url, json.dumps(data).encode(), {"Content-Type": "application/json"}
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class WebhookChannel(HttpChannel):
    """Generic JSON webhook, HMAC-signed when the channel has a secret."""

    kind = TargetKind.WEBHOOK

    def __init__(
        self,
        event_prefix: str = "X-Queuewatch",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(session)
        self._prefix = event_prefix

    def build_request(
        self, target: DeliveryTarget, payload: NotificationPayload
    ) -> tuple[bytes, dict[str, str]]:
        data = render_webhook(payload)
        body = json.dumps(data).encode()
        headers = {
            "Content-Type": "application/json",
            f"{self._prefix}-Event": payload.event,
            f"{self._prefix}-Version": WEBHOOK_VERSION,
            f"{self._prefix}-Timestamp": data["timestamp"],
        }
        if target.secret:
            headers[f"{self._prefix}-Signature"] = f"sha256={sign_body(body, target.secret)}"
        return body, headers

    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        body, headers = self.build_request(target, payload)
        await self._post(target.address, body, headers)


class SlackChannel(HttpChannel):
    """Slack incoming webhook with severity-coloured attachments."""

    kind = TargetKind.SLACK

    def __init__(
        self, frontend_url: str = "", session: aiohttp.ClientSession | None = None
    ) -> None:
        super().__init__(session)
        self._frontend_url = frontend_url

    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        await self._post_json(target.address, render_slack(payload, self._frontend_url))


class DiscordChannel(HttpChannel):
    """Discord webhook with colour-coded embeds."""

    kind = TargetKind.DISCORD

    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        await self._post_json(target.address, render_discord(payload))


class EmailChannel(NotificationChannel):
    """Plain-text email over SMTP; the blocking client runs in a worker thread."""

    kind = TargetKind.EMAIL

    def __init__(
        self,
        config: EmailConfig,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        timeout_secs: float = 10.0,
    ) -> None:
        self._config = config
        self._smtp_factory = smtp_factory
        self._timeout = timeout_secs

    def build_message(
        self, target: DeliveryTarget, payload: NotificationPayload
    ) -> EmailMessage:
        subject, text = render_email(payload)
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._config.from_address
        msg["To"] = target.address
        msg.set_content(text)
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        cfg = self._config
        with self._smtp_factory(cfg.smtp_host, cfg.smtp_port, timeout=self._timeout) as smtp:
            if cfg.use_tls:
                smtp.starttls()
            if cfg.username:
                smtp.login(cfg.username, cfg.password.get_secret_value())
            smtp.send_message(msg)

    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        msg = self.build_message(target, payload)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentDeliveryError(f"recipient refused: {target.address}") from exc
        except smtplib.SMTPAuthenticationError as exc:
            # Server-side misconfiguration, not the tenant's address.
            raise DeliveryError(f"SMTP authentication failed: {exc.smtp_code}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(f"{type(exc).__name__}: {exc}") from exc


class BrowserChannel(NotificationChannel):
    """In-process inbox per workspace, drained by the browser push layer."""

    kind = TargetKind.BROWSER

    def __init__(self, inbox_size: int = 200) -> None:
        self._inbox_size = inbox_size
        self._inboxes: dict[str, deque[NotificationPayload]] = {}

    async def deliver(self, target: DeliveryTarget, payload: NotificationPayload) -> None:
        inbox = self._inboxes.get(target.workspace_id)
        if inbox is None:
            inbox = deque(maxlen=self._inbox_size)
            self._inboxes[target.workspace_id] = inbox
        inbox.append(payload)

    def pending(self, workspace_id: str) -> int:
        return len(self._inboxes.get(workspace_id, ()))

    def drain(self, workspace_id: str) -> list[NotificationPayload]:
        """Remove and return every queued notification for the workspace."""
        inbox = self._inboxes.pop(workspace_id, None)
        return list(inbox) if inbox else []
