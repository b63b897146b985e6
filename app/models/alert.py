"""Alert rules, alerts and their notifications."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlalchemy import Index, String, Text, text
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, new_uuid, utcnow


class ConditionOperator(StrEnum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    NE = "ne"
    GTE = "gte"
    LTE = "lte"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(StrEnum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


class NotificationChannelType(StrEnum):
    EMAIL = "email"
    CHAT_WEBHOOK = "chat_webhook"
    GENERIC_WEBHOOK = "generic_webhook"
    SMS = "sms"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


class NotificationTarget(BaseModel):
    channel: NotificationChannelType
    address: str = PydanticField(min_length=1, max_length=2048)


class AlertRule(TimestampMixin, SQLModel, table=True):
    __tablename__ = "alert_rules"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    # None = platform-wide rule
    tenant_id: uuid.UUID | None = Field(
        default=None, foreign_key="tenants.id", nullable=True, index=True,
    )
    name: str = Field(max_length=255, nullable=False)
    metric_query: str = Field(sa_column=Column(Text, nullable=False))
    operator: ConditionOperator = Field(nullable=False)
    threshold: float = Field(nullable=False)
    evaluation_interval_seconds: int = Field(default=60)
    severity: AlertSeverity = Field(default=AlertSeverity.WARNING)
    is_enabled: bool = Field(default=True, index=True)
    # JSON array of NotificationTarget objects
    targets: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))


class Alert(SQLModel, table=True):
    __tablename__ = "alerts"
    # At most one active alert per (rule, tenant).
    __table_args__ = (
        Index(
            "uq_alerts_active_dedup_key",
            "dedup_key",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    rule_id: uuid.UUID = Field(foreign_key="alert_rules.id", nullable=False, index=True)
    tenant_id: uuid.UUID | None = Field(
        default=None, foreign_key="tenants.id", nullable=True, index=True,
    )
    dedup_key: str = Field(max_length=100, nullable=False, index=True)
    severity: AlertSeverity = Field(nullable=False)
    status: str = Field(
        default=AlertStatus.ACTIVE,
        sa_column=Column(String(20), nullable=False, index=True),
    )
    # JSON object: value, labels, threshold, operator, query
    context: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))

    triggered_at: datetime = Field(default_factory=utcnow, nullable=False)
    resolved_at: datetime | None = Field(default=None)
    resolved_by: str | None = Field(default=None, max_length=255)
    resolution: str | None = Field(default=None, max_length=2000)


class AlertNotification(SQLModel, table=True):
    __tablename__ = "alert_notifications"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    alert_id: uuid.UUID = Field(foreign_key="alerts.id", nullable=False, index=True)
    channel: NotificationChannelType = Field(nullable=False)
    recipient: str = Field(max_length=2048, nullable=False)
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    error_message: str | None = Field(default=None, max_length=2000)
    provider_message_id: str | None = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    sent_at: datetime | None = Field(default=None)
    failed_at: datetime | None = Field(default=None)
    delivered_at: datetime | None = Field(default=None)


def dedup_key_for(rule_id: uuid.UUID, tenant_id: uuid.UUID | None) -> str:
    return f"{rule_id}:{tenant_id or 'platform'}"


# ── Pydantic schemas ─────────────────────────────────────────

class AlertRuleCreate(SQLModel):
    tenant_id: uuid.UUID | None = None
    name: str = Field(max_length=255)
    metric_query: str
    operator: ConditionOperator
    threshold: float
    evaluation_interval_seconds: int = Field(default=60, ge=10)
    severity: AlertSeverity = AlertSeverity.WARNING
    is_enabled: bool = True
    targets: list[NotificationTarget] = Field(default_factory=list)


class AlertRuleUpdate(SQLModel):
    name: str | None = Field(default=None, max_length=255)
    metric_query: str | None = None
    operator: ConditionOperator | None = None
    threshold: float | None = None
    evaluation_interval_seconds: int | None = Field(default=None, ge=10)
    severity: AlertSeverity | None = None
    is_enabled: bool | None = None
    targets: list[NotificationTarget] | None = None


class AlertRuleRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID | None
    name: str
    metric_query: str
    operator: ConditionOperator
    threshold: float
    evaluation_interval_seconds: int
    severity: AlertSeverity
    is_enabled: bool
    targets: list[NotificationTarget]
    created_at: datetime
    updated_at: datetime


class AlertRead(SQLModel):
    id: uuid.UUID
    rule_id: uuid.UUID
    tenant_id: uuid.UUID | None
    severity: AlertSeverity
    status: AlertStatus
    context: dict
    triggered_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None
    resolution: str | None


class AlertResolve(SQLModel):
    resolution: str = Field(default="", max_length=2000)


class AlertNotificationRead(SQLModel):
    id: uuid.UUID
    alert_id: uuid.UUID
    channel: NotificationChannelType
    recipient: str
    status: NotificationStatus
    error_message: str | None
    provider_message_id: str | None
    created_at: datetime
    sent_at: datetime | None
    failed_at: datetime | None
    delivered_at: datetime | None
