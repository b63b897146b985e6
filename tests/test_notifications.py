"""Notification dispatcher and channel tests."""

import json
import uuid

import httpx
import pytest
from sqlmodel import select

from app.core.errors import InvalidStatusTransition, NotificationDeliveryError
from app.models.alert import (
    Alert,
    AlertNotification,
    AlertRule,
    AlertSeverity,
    ConditionOperator,
    NotificationChannelType,
    NotificationStatus,
    NotificationTarget,
    dedup_key_for,
)
from app.services.notifications import (
    AlertPayload,
    ChannelReceipt,
    ChatWebhookChannel,
    EmailChannel,
    GenericWebhookChannel,
    NotificationDispatcher,
    SmsChannel,
    transition_notification,
)
from app.services.webhook_dispatch import sign_body


async def _alert(session_factory) -> Alert:
    async with session_factory() as sess:
        rule = AlertRule(
            name="Disk almost full",
            metric_query="disk_used_ratio",
            operator=ConditionOperator.GT,
            threshold=0.9,
        )
        sess.add(rule)
        await sess.flush()
        alert = Alert(
            rule_id=rule.id,
            dedup_key=dedup_key_for(rule.id, None),
            severity=AlertSeverity.CRITICAL,
            context=json.dumps({
                "rule_name": rule.name, "value": 0.97, "operator": "gt", "threshold": 0.9,
            }),
        )
        sess.add(alert)
        await sess.commit()
        await sess.refresh(alert)
        return alert


class StaticChannel:
    def __init__(self, receipt: ChannelReceipt | None = None, error: Exception | None = None):
        self.receipt = receipt or ChannelReceipt()
        self.error = error

    async def send(self, payload, address):
        if self.error is not None:
            raise self.error
        return self.receipt


def _recording_transport(captured: list[httpx.Request], status: int = 200, body: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status, json=body or {})

    return httpx.MockTransport(handler)


# ── Status transitions ────────────────────────────────────────

def test_notification_transitions():
    n = AlertNotification(alert_id=uuid.uuid4(), channel="email", recipient="a@example.com")
    assert n.status == NotificationStatus.PENDING

    transition_notification(n, NotificationStatus.SENT)
    assert n.sent_at is not None
    transition_notification(n, NotificationStatus.DELIVERED)
    assert n.delivered_at is not None

    with pytest.raises(InvalidStatusTransition):
        transition_notification(n, NotificationStatus.FAILED)


def test_failed_notification_is_terminal():
    n = AlertNotification(alert_id=uuid.uuid4(), channel="sms", recipient="+15550100")
    transition_notification(n, NotificationStatus.FAILED)
    assert n.failed_at is not None
    with pytest.raises(InvalidStatusTransition):
        transition_notification(n, NotificationStatus.SENT)


def test_pending_cannot_jump_to_delivered():
    n = AlertNotification(alert_id=uuid.uuid4(), channel="email", recipient="a@example.com")
    with pytest.raises(InvalidStatusTransition):
        transition_notification(n, NotificationStatus.DELIVERED)


# ── Dispatcher ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_send_records_sent(test_session_factory):
    alert = await _alert(test_session_factory)
    dispatcher = NotificationDispatcher(
        test_session_factory,
        channels={NotificationChannelType.EMAIL: StaticChannel(ChannelReceipt("prov-42"))},
        timeout=1,
    )

    n = await dispatcher.send(alert, NotificationTarget(channel="email", address="ops@example.com"))

    assert n.status == NotificationStatus.SENT
    assert n.provider_message_id == "prov-42"
    assert n.sent_at is not None


@pytest.mark.asyncio
async def test_send_with_inline_delivery_confirmation(test_session_factory):
    alert = await _alert(test_session_factory)
    dispatcher = NotificationDispatcher(
        test_session_factory,
        channels={NotificationChannelType.SMS: StaticChannel(ChannelReceipt("sms-1", delivered=True))},
        timeout=1,
    )

    n = await dispatcher.send(alert, NotificationTarget(channel="sms", address="+15550100"))

    assert n.status == NotificationStatus.DELIVERED
    assert n.sent_at is not None
    assert n.delivered_at is not None


@pytest.mark.asyncio
async def test_send_all_isolates_failures(test_session_factory):
    alert = await _alert(test_session_factory)
    dispatcher = NotificationDispatcher(
        test_session_factory,
        channels={
            NotificationChannelType.EMAIL: StaticChannel(error=NotificationDeliveryError("bounced")),
            NotificationChannelType.CHAT_WEBHOOK: StaticChannel(),
        },
        timeout=1,
    )

    results = await dispatcher.send_all(alert, [
        NotificationTarget(channel="email", address="ops@example.com"),
        NotificationTarget(channel="chat_webhook", address="https://chat.example.com/hook"),
    ])

    statuses = {n.channel: n.status for n in results}
    assert statuses == {
        NotificationChannelType.EMAIL: NotificationStatus.FAILED,
        NotificationChannelType.CHAT_WEBHOOK: NotificationStatus.SENT,
    }
    failed = next(n for n in results if n.status == NotificationStatus.FAILED)
    assert failed.error_message == "bounced"
    assert failed.failed_at is not None

    async with test_session_factory() as sess:
        stored = (await sess.execute(select(AlertNotification))).scalars().all()
    assert len(stored) == 2


@pytest.mark.asyncio
async def test_mark_delivered(test_session_factory):
    alert = await _alert(test_session_factory)
    dispatcher = NotificationDispatcher(
        test_session_factory,
        channels={NotificationChannelType.EMAIL: StaticChannel(ChannelReceipt("p"))},
        timeout=1,
    )
    n = await dispatcher.send(alert, NotificationTarget(channel="email", address="ops@example.com"))

    delivered = await dispatcher.mark_delivered(n.id)
    assert delivered.status == NotificationStatus.DELIVERED

    with pytest.raises(InvalidStatusTransition):
        await dispatcher.mark_delivered(n.id)

    assert await dispatcher.mark_delivered(uuid.uuid4()) is None


# ── Channels ──────────────────────────────────────────────────

def _payload() -> AlertPayload:
    from datetime import datetime

    return AlertPayload(
        alert_id=uuid.uuid4(),
        rule_id=uuid.uuid4(),
        rule_name="CPU hot",
        tenant_id=None,
        severity="critical",
        status="active",
        triggered_at=datetime(2026, 1, 1, 12, 0, 0),
        context={"value": 97, "operator": "gt", "threshold": 90},
    )


def test_payload_summary_mentions_rule_and_scope():
    summary = _payload().summary()
    assert summary.startswith("[CRITICAL] CPU hot (platform)")
    assert "97 gt 90" in summary


@pytest.mark.asyncio
async def test_email_channel_posts_to_provider():
    captured: list[httpx.Request] = []
    channel = EmailChannel(
        "https://mail.test/emails", "key-1", "alerts@example.com",
        transport=_recording_transport(captured, body={"id": "email-123"}),
    )

    receipt = await channel.send(_payload(), "ops@example.com")

    assert receipt.provider_message_id == "email-123"
    body = json.loads(captured[0].content)
    assert body["to"] == ["ops@example.com"]
    assert body["from"] == "alerts@example.com"
    assert captured[0].headers["Authorization"] == "Bearer key-1"


@pytest.mark.asyncio
async def test_email_channel_requires_key():
    channel = EmailChannel("https://mail.test/emails", "", "alerts@example.com")
    with pytest.raises(NotificationDeliveryError):
        await channel.send(_payload(), "ops@example.com")


@pytest.mark.asyncio
async def test_chat_webhook_channel_posts_text():
    captured: list[httpx.Request] = []
    channel = ChatWebhookChannel(transport=_recording_transport(captured))

    await channel.send(_payload(), "https://chat.test/hook")

    assert str(captured[0].url) == "https://chat.test/hook"
    assert "CPU hot" in json.loads(captured[0].content)["text"]


@pytest.mark.asyncio
async def test_generic_webhook_channel_signs_body():
    captured: list[httpx.Request] = []
    channel = GenericWebhookChannel("sign-me", transport=_recording_transport(captured))

    await channel.send(_payload(), "https://hooks.test/alerts")

    request = captured[0]
    assert request.headers["X-StackWarden-Signature"] == sign_body("sign-me", request.content.decode())
    assert json.loads(request.content)["rule_name"] == "CPU hot"


@pytest.mark.asyncio
async def test_http_error_becomes_delivery_error():
    channel = ChatWebhookChannel(transport=_recording_transport([], status=500))
    with pytest.raises(NotificationDeliveryError, match="HTTP 500"):
        await channel.send(_payload(), "https://chat.test/hook")


@pytest.mark.asyncio
async def test_sms_channel_reports_inline_delivery():
    captured: list[httpx.Request] = []
    channel = SmsChannel(
        "https://sms.test/messages", "sms-key", "+15550000",
        transport=_recording_transport(captured, body={"id": "sms-9", "status": "delivered"}),
    )

    receipt = await channel.send(_payload(), "+15550100")

    assert receipt.delivered is True
    assert receipt.provider_message_id == "sms-9"
    assert json.loads(captured[0].content)["to"] == "+15550100"


@pytest.mark.asyncio
async def test_sms_channel_requires_gateway():
    channel = SmsChannel("", "", "")
    with pytest.raises(NotificationDeliveryError):
        await channel.send(_payload(), "+15550100")
