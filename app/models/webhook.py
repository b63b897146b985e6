"""Webhook model — subscribers (dashboards) for domain events."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class WebhookEvent(StrEnum):
    TENANT_ACTIVATED = "tenant.activated"
    TENANT_SUSPENDED = "tenant.suspended"
    TENANT_CANCELLED = "tenant.cancelled"
    INFRASTRUCTURE_DEPLOYED = "infrastructure.deployed"
    DEPLOYMENT_FAILED = "deployment.failed"
    HEALTH_CHECK_RECORDED = "health_check.recorded"
    ALERT_TRIGGERED = "alert.triggered"
    ALERT_RESOLVED = "alert.resolved"


class Webhook(TimestampMixin, SQLModel, table=True):
    __tablename__ = "webhooks"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    # None = receives events for every tenant
    tenant_id: uuid.UUID | None = Field(
        default=None, foreign_key="tenants.id", nullable=True, index=True,
    )
    url: str = Field(max_length=2048)
    secret: str = Field(max_length=256)  # for HMAC signing
    events: str = Field(sa_column=Column(Text, nullable=False))  # JSON array of event types
    is_active: bool = Field(default=True)
    description: str = Field(default="", max_length=500)


# ── Pydantic schemas ─────────────────────────────────────────


class WebhookCreate(SQLModel):
    tenant_id: uuid.UUID | None = None
    url: str = Field(max_length=2048)
    events: list[str]
    description: str = Field(default="", max_length=500)
    secret: str | None = None


class WebhookRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID | None
    url: str
    events: list[str]
    is_active: bool
    description: str
    has_secret: bool
    created_at: datetime
    updated_at: datetime


class WebhookCreated(WebhookRead):
    """Returned exactly once at creation time — includes the raw secret."""
    secret: str
