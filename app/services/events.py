"""Domain events returned by state-changing operations.

Operations never publish on their own; they return the list of events they
emitted and the caller hands that list to :func:`publish_events`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.models.webhook import WebhookEvent
from app.services.webhook_dispatch import dispatch_webhook_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    event_type: WebhookEvent
    tenant_id: uuid.UUID | None
    data: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict:
        return {
            "event": str(self.event_type),
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


async def publish_events(session: AsyncSession, events: list[DomainEvent]) -> None:
    """Deliver events to subscriber webhooks. Never raises."""
    for event in events:
        logger.info("Event %s (tenant=%s)", event.event_type, event.tenant_id)
        await dispatch_webhook_event(
            session,
            event.tenant_id,
            event.event_type,
            event.to_payload(),
        )
