"""Notification dispatcher — delivers alert notifications over channels.

Every send produces one AlertNotification. Its status only ever moves
pending → sent → delivered or pending → failed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import httpx
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings, get_settings
from app.core.errors import InvalidStatusTransition, NotificationDeliveryError
from app.models.alert import (
    Alert,
    AlertNotification,
    NotificationChannelType,
    NotificationStatus,
    NotificationTarget,
)
from app.models.base import utcnow
from app.services.registry import NotificationRepository
from app.services.webhook_dispatch import sign_body

logger = logging.getLogger(__name__)


@dataclass
class AlertPayload:
    """Structured alert content handed to every channel."""
    alert_id: uuid.UUID
    rule_id: uuid.UUID
    rule_name: str
    tenant_id: uuid.UUID | None
    severity: str
    status: str
    triggered_at: datetime
    context: dict = field(default_factory=dict)

    @classmethod
    def from_alert(cls, alert: Alert) -> AlertPayload:
        context = json.loads(alert.context) if isinstance(alert.context, str) else alert.context
        return cls(
            alert_id=alert.id,
            rule_id=alert.rule_id,
            rule_name=context.get("rule_name", ""),
            tenant_id=alert.tenant_id,
            severity=str(alert.severity),
            status=str(alert.status),
            triggered_at=alert.triggered_at,
            context=context,
        )

    def summary(self) -> str:
        scope = self.context.get("tenant") or (str(self.tenant_id) if self.tenant_id else "platform")
        return (
            f"[{self.severity.upper()}] {self.rule_name or self.rule_id} ({scope}): "
            f"value {self.context.get('value')} {self.context.get('operator')} "
            f"{self.context.get('threshold')}"
        )

    def to_dict(self) -> dict:
        return {
            "alert_id": str(self.alert_id),
            "rule_id": str(self.rule_id),
            "rule_name": self.rule_name,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "severity": self.severity,
            "status": self.status,
            "triggered_at": self.triggered_at.isoformat(),
            "summary": self.summary(),
            "context": self.context,
        }


@dataclass
class ChannelReceipt:
    provider_message_id: str | None = None
    # True when the provider confirmed delivery synchronously
    delivered: bool = False


class NotificationChannel(Protocol):
    async def send(self, payload: AlertPayload, address: str) -> ChannelReceipt: ...


# ── Channels ──────────────────────────────────────────────────

class _HttpChannel:
    def __init__(
        self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(f"{url}: {exc}") from exc
        if not resp.is_success:
            raise NotificationDeliveryError(f"{url} answered HTTP {resp.status_code}")
        return resp


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class EmailChannel(_HttpChannel):
    """Transactional email API (Resend-compatible JSON)."""

    def __init__(self, api_url: str, api_key: str, sender: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    async def send(self, payload: AlertPayload, address: str) -> ChannelReceipt:
        if not self.api_key:
            raise NotificationDeliveryError("Email API key is not configured")
        resp = await self._post(
            self.api_url,
            json={
                "from": self.sender,
                "to": [address],
                "subject": payload.summary(),
                "text": json.dumps(payload.to_dict(), indent=2, default=str),
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return ChannelReceipt(provider_message_id=_json_or_empty(resp).get("id"))


class ChatWebhookChannel(_HttpChannel):
    """Slack / Teams style incoming webhook — the address is the webhook URL."""

    async def send(self, payload: AlertPayload, address: str) -> ChannelReceipt:
        await self._post(address, json={"text": payload.summary()})
        return ChannelReceipt()


class GenericWebhookChannel(_HttpChannel):
    """Full JSON payload, HMAC-SHA256 signed when a signing secret is set."""

    def __init__(self, signing_secret: str = "", **kwargs) -> None:
        super().__init__(**kwargs)
        self.signing_secret = signing_secret

    async def send(self, payload: AlertPayload, address: str) -> ChannelReceipt:
        body = json.dumps(payload.to_dict(), default=str)
        headers = {
            "Content-Type": "application/json",
            "X-StackWarden-Event": "alert.notification",
        }
        if self.signing_secret:
            headers["X-StackWarden-Signature"] = sign_body(self.signing_secret, body)
        resp = await self._post(address, content=body, headers=headers)
        return ChannelReceipt(provider_message_id=resp.headers.get("X-Request-Id"))


class SmsChannel(_HttpChannel):
    """HTTP SMS gateway. Reports delivery when the gateway confirms it inline."""

    def __init__(self, api_url: str, api_key: str, sender: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    async def send(self, payload: AlertPayload, address: str) -> ChannelReceipt:
        if not self.api_url:
            raise NotificationDeliveryError("SMS gateway is not configured")
        resp = await self._post(
            self.api_url,
            json={"to": address, "from": self.sender, "body": payload.summary()[:320]},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        data = _json_or_empty(resp)
        return ChannelReceipt(
            provider_message_id=data.get("id"),
            delivered=data.get("status") == "delivered",
        )


def default_channels(
    settings: Settings | None = None,
) -> dict[NotificationChannelType, NotificationChannel]:
    s = settings or get_settings()
    timeout = s.notification_timeout_seconds
    return {
        NotificationChannelType.EMAIL: EmailChannel(
            s.email_api_url, s.email_api_key, s.email_from, timeout=timeout,
        ),
        NotificationChannelType.CHAT_WEBHOOK: ChatWebhookChannel(timeout=timeout),
        NotificationChannelType.GENERIC_WEBHOOK: GenericWebhookChannel(
            s.notification_signing_secret, timeout=timeout,
        ),
        NotificationChannelType.SMS: SmsChannel(
            s.sms_api_url, s.sms_api_key, s.sms_from, timeout=timeout,
        ),
    }


# ── Status transitions ────────────────────────────────────────

_TRANSITIONS: dict[NotificationStatus, set[NotificationStatus]] = {
    NotificationStatus.PENDING: {NotificationStatus.SENT, NotificationStatus.FAILED},
    NotificationStatus.SENT: {NotificationStatus.DELIVERED},
    NotificationStatus.FAILED: set(),
    NotificationStatus.DELIVERED: set(),
}


def transition_notification(notification: AlertNotification, target: NotificationStatus) -> None:
    current = NotificationStatus(notification.status)
    if target not in _TRANSITIONS[current]:
        raise InvalidStatusTransition("AlertNotification", current, target)
    now = utcnow()
    notification.status = target
    if target == NotificationStatus.SENT:
        notification.sent_at = now
    elif target == NotificationStatus.FAILED:
        notification.failed_at = now
    elif target == NotificationStatus.DELIVERED:
        notification.delivered_at = now


# ── Dispatcher ────────────────────────────────────────────────

class NotificationDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        channels: dict[NotificationChannelType, NotificationChannel] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.channels = channels if channels is not None else default_channels()
        self.timeout = timeout if timeout is not None else get_settings().notification_timeout_seconds

    async def send(self, alert: Alert, target: NotificationTarget) -> AlertNotification:
        """Send one notification and record its outcome. Delivery errors never raise."""
        notification = AlertNotification(
            alert_id=alert.id,
            channel=target.channel,
            recipient=target.address,
        )
        payload = AlertPayload.from_alert(alert)

        async with self.session_factory() as session:
            repo = NotificationRepository(session)
            await repo.save(notification)

            try:
                channel = self.channels.get(target.channel)
                if channel is None:
                    raise NotificationDeliveryError(f"No channel configured for '{target.channel}'")
                # Channels get a little slack beyond their own HTTP timeout.
                receipt = await asyncio.wait_for(
                    channel.send(payload, target.address), timeout=self.timeout + 5,
                )
            except Exception as exc:
                logger.warning(
                    "Notification %s via %s failed: %s", notification.id, target.channel, exc,
                )
                transition_notification(notification, NotificationStatus.FAILED)
                notification.error_message = (str(exc) or exc.__class__.__name__)[:2000]
            else:
                transition_notification(notification, NotificationStatus.SENT)
                notification.provider_message_id = receipt.provider_message_id
                if receipt.delivered:
                    transition_notification(notification, NotificationStatus.DELIVERED)

            await repo.save(notification)
        return notification

    async def send_all(
        self, alert: Alert, targets: list[NotificationTarget]
    ) -> list[AlertNotification]:
        """Send to every target independently; one failure never blocks the others."""
        results = await asyncio.gather(
            *(self.send(alert, t) for t in targets), return_exceptions=True,
        )
        notifications: list[AlertNotification] = []
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Could not record notification for alert %s to %s: %s",
                    alert.id, target.address, result,
                )
                continue
            notifications.append(result)
        return notifications

    async def mark_delivered(self, notification_id: uuid.UUID) -> AlertNotification | None:
        """Apply a provider delivery confirmation (sent → delivered)."""
        async with self.session_factory() as session:
            repo = NotificationRepository(session)
            notification = await repo.get(notification_id)
            if notification is None:
                return None
            transition_notification(notification, NotificationStatus.DELIVERED)
            await repo.save(notification)
            return notification
