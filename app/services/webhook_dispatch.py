"""Webhook dispatch — fire HTTP notifications for domain events."""

import hashlib
import hmac
import json
import logging
import uuid

import httpx
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.webhook import Webhook

logger = logging.getLogger(__name__)


async def dispatch_webhook_event(
    session: AsyncSession,
    tenant_id: uuid.UUID | None,
    event_type: str,
    payload: dict,
) -> None:
    """Fire webhooks subscribed to an event. Never raises.

    Platform-wide subscribers (tenant_id IS NULL) receive every event;
    tenant subscribers only receive their own tenant's events.
    """
    try:
        scope = Webhook.tenant_id.is_(None)  # type: ignore[union-attr]
        if tenant_id is not None:
            scope = or_(scope, Webhook.tenant_id == tenant_id)
        stmt = select(Webhook).where(
            scope,
            Webhook.is_active.is_(True),  # type: ignore[attr-defined]
        )
        result = await session.execute(stmt)
        webhooks = result.scalars().all()

        for wh in webhooks:
            events = json.loads(wh.events)
            if event_type not in events:
                continue
            await _send_webhook(wh, event_type, payload)
    except Exception:
        logger.exception(
            "Webhook dispatch failed for tenant %s event %s", tenant_id, event_type
        )


def sign_body(secret: str, body: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


async def _send_webhook(
    wh: Webhook, event_type: str, payload: dict
) -> None:
    body = json.dumps(payload, default=str)
    signature = sign_body(wh.secret, body)
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            await client.post(
                wh.url,
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-StackWarden-Signature": signature,
                    "X-StackWarden-Event": event_type,
                },
            )
    except Exception:
        logger.warning("Webhook delivery failed for %s to %s", event_type, wh.url)
