"""initial control plane schema

Revision ID: 3f1a9c2d7e40
Revises:
Create Date: 2026-10-17 09:12:44.201913

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2d7e40'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# SQLModel persists enum member names
tenant_status = sa.Enum("PENDING", "ACTIVE", "SUSPENDED", "CANCELLED", name="tenantstatus")
module_type = sa.Enum("FLEET", "GARAGE", "BILLING", "WORKFORCE", name="moduletype")
health_status = sa.Enum("HEALTHY", "DEGRADED", "UNHEALTHY", name="healthstatus")
condition_operator = sa.Enum("GT", "GTE", "LT", "LTE", "EQ", "NE", name="conditionoperator")
alert_severity = sa.Enum("INFO", "WARNING", "CRITICAL", name="alertseverity")
channel_type = sa.Enum("EMAIL", "SMS", "CHAT_WEBHOOK", "GENERIC_WEBHOOK", name="notificationchanneltype")
notification_status = sa.Enum("PENDING", "SENT", "DELIVERED", "FAILED", name="notificationstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("status", tenant_status, nullable=False),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("suspended_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenants_subdomain", "tenants", ["subdomain"], unique=True)
    op.create_index("ix_tenants_status", "tenants", ["status"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("module", module_type, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("ends_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"])

    op.create_table(
        "tenant_infrastructure",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("namespace", sa.String(63), nullable=False),
        sa.Column("database_url", sa.Text(), nullable=True),
        sa.Column("document_store_url", sa.String(1024), nullable=True),
        sa.Column("document_database", sa.String(255), nullable=True),
        sa.Column("cache_url", sa.String(1024), nullable=True),
        sa.Column("identity_realm", sa.String(255), nullable=True),
        sa.Column("identity_client_id", sa.String(255), nullable=True),
        sa.Column("identity_client_secret", sa.Text(), nullable=True),
        sa.Column("application_url", sa.String(1024), nullable=True),
        sa.Column("error_message", sa.String(2000), nullable=True),
        sa.Column("deployed_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tenant_infrastructure_tenant_id", "tenant_infrastructure", ["tenant_id"])
    op.create_index("ix_tenant_infrastructure_status", "tenant_infrastructure", ["status"])
    op.create_index(
        "uq_tenant_infrastructure_current",
        "tenant_infrastructure",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status != 'failed'"),
    )

    op.create_table(
        "health_check_results",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("overall_status", health_status, nullable=False),
        sa.Column("checks", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("checked_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_health_check_results_tenant_id", "health_check_results", ["tenant_id"])
    op.create_index("ix_health_check_results_checked_at", "health_check_results", ["checked_at"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("metric_query", sa.Text(), nullable=False),
        sa.Column("operator", condition_operator, nullable=False),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("evaluation_interval_seconds", sa.Integer(), nullable=False),
        sa.Column("severity", alert_severity, nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
        sa.Column("targets", sa.Text(), nullable=False, server_default="[]"),
        *_timestamps(),
    )
    op.create_index("ix_alert_rules_tenant_id", "alert_rules", ["tenant_id"])
    op.create_index("ix_alert_rules_is_enabled", "alert_rules", ["is_enabled"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("rule_id", sa.Uuid(), sa.ForeignKey("alert_rules.id"), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("dedup_key", sa.String(100), nullable=False),
        sa.Column("severity", alert_severity, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("context", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("triggered_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("resolution", sa.String(2000), nullable=True),
    )
    op.create_index("ix_alerts_rule_id", "alerts", ["rule_id"])
    op.create_index("ix_alerts_tenant_id", "alerts", ["tenant_id"])
    op.create_index("ix_alerts_dedup_key", "alerts", ["dedup_key"])
    op.create_index("ix_alerts_status", "alerts", ["status"])
    op.create_index(
        "uq_alerts_active_dedup_key",
        "alerts",
        ["dedup_key"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "alert_notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("alert_id", sa.Uuid(), sa.ForeignKey("alerts.id"), nullable=False),
        sa.Column("channel", channel_type, nullable=False),
        sa.Column("recipient", sa.String(2048), nullable=False),
        sa.Column("status", notification_status, nullable=False),
        sa.Column("error_message", sa.String(2000), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_alert_notifications_alert_id", "alert_notifications", ["alert_id"])

    op.create_table(
        "webhooks",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("secret", sa.String(256), nullable=False),
        sa.Column("events", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_webhooks_tenant_id", "webhooks", ["tenant_id"])


def downgrade() -> None:
    op.drop_table("webhooks")
    op.drop_table("alert_notifications")
    op.drop_table("alerts")
    op.drop_table("alert_rules")
    op.drop_table("health_check_results")
    op.drop_table("tenant_infrastructure")
    op.drop_table("subscriptions")
    op.drop_table("tenants")
    for enum in (
        notification_status, channel_type, alert_severity, condition_operator,
        health_status, module_type, tenant_status,
    ):
        enum.drop(op.get_bind(), checkfirst=True)
