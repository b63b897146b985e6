"""HealthCheckResult model — append-only per-tenant health time series."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel
from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from app.models.base import new_uuid, utcnow


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SubCheck(BaseModel):
    name: str
    status: HealthStatus
    message: str = ""
    duration_ms: int | None = None


class HealthCheckResult(SQLModel, table=True):
    __tablename__ = "health_check_results"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    overall_status: HealthStatus = Field(nullable=False)
    # Ordered JSON array of SubCheck objects
    checks: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    checked_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)


# ── Pydantic schemas ─────────────────────────────────────────

class HealthCheckRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    overall_status: HealthStatus
    checks: list[SubCheck]
    checked_at: datetime
