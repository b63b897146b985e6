"""TenantInfrastructure model — endpoints provisioned for one tenant."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Index, String, Text, text
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class InfrastructureStatus(StrEnum):
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"


class TenantInfrastructure(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenant_infrastructure"
    # At most one non-failed record per tenant.
    __table_args__ = (
        Index(
            "uq_tenant_infrastructure_current",
            "tenant_id",
            unique=True,
            postgresql_where=text("status != 'failed'"),
            sqlite_where=text("status != 'failed'"),
        ),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    status: str = Field(
        default=InfrastructureStatus.DEPLOYING,
        sa_column=Column(String(20), nullable=False, index=True),
    )
    namespace: str = Field(max_length=63, nullable=False)

    # Connection details. Secrets are Fernet-encrypted (see app.core.security).
    database_url: str | None = Field(default=None, sa_column=Column(Text))
    document_store_url: str | None = Field(default=None, max_length=1024)
    document_database: str | None = Field(default=None, max_length=255)
    cache_url: str | None = Field(default=None, max_length=1024)
    identity_realm: str | None = Field(default=None, max_length=255)
    identity_client_id: str | None = Field(default=None, max_length=255)
    identity_client_secret: str | None = Field(default=None, sa_column=Column(Text))
    application_url: str | None = Field(default=None, max_length=1024)

    error_message: str | None = Field(default=None, max_length=2000)
    deployed_at: datetime | None = Field(default=None)
    failed_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class InfrastructureRead(SQLModel):
    """Public view — never exposes decrypted secrets."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    status: InfrastructureStatus
    namespace: str
    document_store_url: str | None
    document_database: str | None
    cache_url: str | None
    identity_realm: str | None
    identity_client_id: str | None
    application_url: str | None
    error_message: str | None
    deployed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
