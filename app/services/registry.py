"""Tenant registry — repository-style access to the shared records.

Every repository wraps one AsyncSession. Sessions must not be shared between
concurrent tasks, so fan-out code opens one session (and one set of
repositories) per task.
"""

from __future__ import annotations

import json
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from app.core.errors import InvalidStatusTransition
from app.models.alert import Alert, AlertNotification, AlertRule, AlertStatus, NotificationTarget
from app.models.base import utcnow
from app.models.health import HealthCheckResult
from app.models.infrastructure import InfrastructureStatus, TenantInfrastructure
from app.models.tenant import ModuleType, Subscription, Tenant, TenantStatus
from app.models.webhook import WebhookEvent
from app.services.events import DomainEvent


class _Repository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save(self, *records: SQLModel) -> None:
        """Persist one or more records in a single transaction."""
        for record in records:
            self.session.add(record)
        await self.session.commit()
        for record in records:
            await self.session.refresh(record)


# ── Tenants ───────────────────────────────────────────────────

_TENANT_TRANSITIONS: dict[TenantStatus, set[TenantStatus]] = {
    TenantStatus.PENDING: {TenantStatus.ACTIVE, TenantStatus.CANCELLED},
    TenantStatus.ACTIVE: {TenantStatus.SUSPENDED, TenantStatus.CANCELLED},
    TenantStatus.SUSPENDED: {TenantStatus.ACTIVE, TenantStatus.CANCELLED},
    TenantStatus.CANCELLED: set(),
}

_TENANT_EVENTS = {
    TenantStatus.ACTIVE: WebhookEvent.TENANT_ACTIVATED,
    TenantStatus.SUSPENDED: WebhookEvent.TENANT_SUSPENDED,
    TenantStatus.CANCELLED: WebhookEvent.TENANT_CANCELLED,
}


def transition_tenant(tenant: Tenant, target: TenantStatus) -> list[DomainEvent]:
    """Apply a lifecycle transition in memory and return the emitted events."""
    current = TenantStatus(tenant.status)
    if target not in _TENANT_TRANSITIONS[current]:
        raise InvalidStatusTransition("Tenant", current, target)

    now = utcnow()
    tenant.status = target
    tenant.updated_at = now
    if target == TenantStatus.ACTIVE:
        tenant.activated_at = now
        tenant.suspended_at = None
    elif target == TenantStatus.SUSPENDED:
        tenant.suspended_at = now
    elif target == TenantStatus.CANCELLED:
        tenant.cancelled_at = now

    return [
        DomainEvent(
            _TENANT_EVENTS[target],
            tenant.id,
            {"subdomain": tenant.subdomain, "previous_status": str(current)},
        )
    ]


class TenantRepository(_Repository):
    async def get_by_id(self, tenant_id: uuid.UUID) -> Tenant | None:
        return await self.session.get(Tenant, tenant_id)

    async def get_active_tenants(self) -> list[Tenant]:
        stmt = (
            select(Tenant)
            .where(Tenant.status == TenantStatus.ACTIVE)
            .order_by(Tenant.subdomain)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def subdomain_exists(self, subdomain: str) -> bool:
        stmt = select(Tenant.id).where(Tenant.subdomain == subdomain)
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def enabled_modules(self, tenant_id: uuid.UUID) -> list[ModuleType]:
        stmt = select(Subscription.module).where(
            Subscription.tenant_id == tenant_id,
            Subscription.is_active.is_(True),  # type: ignore[attr-defined]
        )
        result = await self.session.execute(stmt)
        return sorted({ModuleType(m) for m in result.scalars().all()})

    async def subscriptions(self, tenant_id: uuid.UUID) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at)  # type: ignore[arg-type]
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


# ── Infrastructure ────────────────────────────────────────────

class InfrastructureRepository(_Repository):
    async def get_current(self, tenant_id: uuid.UUID) -> TenantInfrastructure | None:
        """The tenant's single non-failed record, if any."""
        stmt = select(TenantInfrastructure).where(
            TenantInfrastructure.tenant_id == tenant_id,
            TenantInfrastructure.status != InfrastructureStatus.FAILED,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_latest(self, tenant_id: uuid.UUID) -> TenantInfrastructure | None:
        stmt = (
            select(TenantInfrastructure)
            .where(TenantInfrastructure.tenant_id == tenant_id)
            .order_by(TenantInfrastructure.created_at.desc())  # type: ignore[attr-defined]
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()


# ── Health ────────────────────────────────────────────────────

class HealthRepository(_Repository):
    async def history(self, tenant_id: uuid.UUID, limit: int = 50) -> list[HealthCheckResult]:
        stmt = (
            select(HealthCheckResult)
            .where(HealthCheckResult.tenant_id == tenant_id)
            .order_by(HealthCheckResult.checked_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


# ── Alerts ────────────────────────────────────────────────────

def rule_targets(rule: AlertRule) -> list[NotificationTarget]:
    raw = json.loads(rule.targets) if isinstance(rule.targets, str) else rule.targets
    return [NotificationTarget.model_validate(t) for t in raw]


class AlertRuleRepository(_Repository):
    async def get(self, rule_id: uuid.UUID) -> AlertRule | None:
        return await self.session.get(AlertRule, rule_id)

    async def list_rules(self, tenant_id: uuid.UUID | None = None) -> list[AlertRule]:
        stmt = select(AlertRule).order_by(AlertRule.created_at.desc())  # type: ignore[attr-defined]
        if tenant_id is not None:
            stmt = stmt.where(AlertRule.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def enabled_rules(self) -> list[AlertRule]:
        stmt = select(AlertRule).where(AlertRule.is_enabled.is_(True))  # type: ignore[attr-defined]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, rule: AlertRule) -> None:
        await self.session.delete(rule)
        await self.session.commit()


class AlertRepository(_Repository):
    async def get(self, alert_id: uuid.UUID) -> Alert | None:
        return await self.session.get(Alert, alert_id)

    async def get_active_alert_by_rule_and_tenant(
        self, rule_id: uuid.UUID, tenant_id: uuid.UUID | None
    ) -> Alert | None:
        stmt = select(Alert).where(
            Alert.rule_id == rule_id,
            Alert.status == AlertStatus.ACTIVE,
        )
        if tenant_id is None:
            stmt = stmt.where(Alert.tenant_id.is_(None))  # type: ignore[union-attr]
        else:
            stmt = stmt.where(Alert.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_active_alerts(self, tenant_id: uuid.UUID | None) -> list[Alert]:
        """Active alerts for one tenant, or platform-wide alerts when tenant_id is None."""
        stmt = select(Alert).where(Alert.status == AlertStatus.ACTIVE)
        if tenant_id is None:
            stmt = stmt.where(Alert.tenant_id.is_(None))  # type: ignore[union-attr]
        else:
            stmt = stmt.where(Alert.tenant_id == tenant_id)
        stmt = stmt.order_by(Alert.triggered_at.desc())  # type: ignore[attr-defined]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def notifications(self, alert_id: uuid.UUID) -> list[AlertNotification]:
        stmt = (
            select(AlertNotification)
            .where(AlertNotification.alert_id == alert_id)
            .order_by(AlertNotification.created_at)  # type: ignore[arg-type]
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class NotificationRepository(_Repository):
    async def get(self, notification_id: uuid.UUID) -> AlertNotification | None:
        return await self.session.get(AlertNotification, notification_id)
