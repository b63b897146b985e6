"""Tenant model — one customer with an isolated deployed stack."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid

SUBDOMAIN_PATTERN = r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$"


class TenantStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class ModuleType(StrEnum):
    FLEET = "fleet"
    GARAGE = "garage"
    BILLING = "billing"
    WORKFORCE = "workforce"


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    subdomain: str = Field(max_length=63, unique=True, nullable=False, index=True)
    status: TenantStatus = Field(default=TenantStatus.PENDING, index=True)

    activated_at: datetime | None = Field(default=None)
    suspended_at: datetime | None = Field(default=None)
    cancelled_at: datetime | None = Field(default=None)


class Subscription(TimestampMixin, SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    module: ModuleType = Field(nullable=False)
    is_active: bool = Field(default=True)
    started_at: datetime | None = Field(default=None)
    ends_at: datetime | None = Field(default=None)


# ── Pydantic schemas (read / create) ─────────────────────────

class TenantCreate(BaseModel):
    name: str = PydanticField(max_length=255)
    subdomain: str = PydanticField(max_length=63, pattern=SUBDOMAIN_PATTERN)
    modules: list[ModuleType] = PydanticField(default_factory=list)


class TenantRead(SQLModel):
    id: uuid.UUID
    name: str
    subdomain: str
    status: TenantStatus
    created_at: datetime
    activated_at: datetime | None = None
    suspended_at: datetime | None = None
    cancelled_at: datetime | None = None


class SubscriptionCreate(SQLModel):
    module: ModuleType
    ends_at: datetime | None = None


class SubscriptionRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    module: ModuleType
    is_active: bool
    started_at: datetime | None
    ends_at: datetime | None
