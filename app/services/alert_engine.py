"""Alert rule evaluation engine.

Each cycle picks the enabled rules that are due (per their own evaluation
interval), queries the metrics backend for each one concurrently and raises
an alert on the first breaching sample — unless an active alert already
exists for the same (rule, tenant), in which case nothing happens.

Resolution is an explicit operator action; alerts are never auto-resolved
when the metric drops back under the threshold.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import operator
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings, get_settings
from app.core.errors import InvalidStatusTransition, TransientQueryError
from app.models.alert import (
    Alert,
    AlertNotification,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    ConditionOperator,
    NotificationTarget,
    dedup_key_for,
)
from app.models.base import utcnow
from app.models.tenant import TenantStatus
from app.models.webhook import WebhookEvent
from app.services.events import DomainEvent, publish_events
from app.services.metrics import MetricSample, MetricsBackend
from app.services.notifications import NotificationDispatcher
from app.services.registry import AlertRepository, AlertRuleRepository, TenantRepository, rule_targets

logger = logging.getLogger(__name__)

_OPERATORS: dict[ConditionOperator, Callable[[float, float], bool]] = {
    ConditionOperator.GT: operator.gt,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.EQ: operator.eq,
    ConditionOperator.NE: operator.ne,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.LTE: operator.le,
}


def condition_met(op: ConditionOperator | str, value: float, threshold: float) -> bool:
    if math.isnan(value):
        return False
    return _OPERATORS[ConditionOperator(op)](value, threshold)


def render_query(query: str, subdomain: str | None) -> str:
    """Substitute the ``{tenant}`` placeholder with the tenant subdomain."""
    if subdomain is None:
        return query
    return query.replace("{tenant}", subdomain)


class RuleOutcomeStatus(StrEnum):
    TRIGGERED = "triggered"
    DEDUPLICATED = "deduplicated"
    NOT_MET = "not_met"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RuleEvaluationOutcome:
    rule_id: uuid.UUID
    status: RuleOutcomeStatus
    alert_id: uuid.UUID | None = None
    error: str | None = None
    notifications: list[AlertNotification] = field(default_factory=list)


@dataclass
class RuleSnapshot:
    """Detached copy of a rule, safe to hand to a concurrent task."""
    id: uuid.UUID
    name: str
    tenant_id: uuid.UUID | None
    subdomain: str | None
    tenant_active: bool
    query: str
    operator: ConditionOperator
    threshold: float
    severity: AlertSeverity
    targets: list[NotificationTarget]


class AlertEvaluationEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        metrics: MetricsBackend,
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.metrics = metrics
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self._last_evaluated: dict[uuid.UUID, datetime] = {}

    def is_due(self, rule: AlertRule, now: datetime) -> bool:
        last = self._last_evaluated.get(rule.id)
        if last is None:
            return True
        return (now - last) >= timedelta(seconds=rule.evaluation_interval_seconds)

    async def run_cycle(self, now: datetime | None = None) -> list[RuleEvaluationOutcome]:
        now = now or utcnow()
        async with self.session_factory() as session:
            rules = await AlertRuleRepository(session).enabled_rules()
            enabled_ids = {r.id for r in rules}
            due = [r for r in rules if self.is_due(r, now)]
            snapshots: list[RuleSnapshot] = []
            unreadable: list[RuleEvaluationOutcome] = []
            for rule in due:
                try:
                    snapshots.append(await self._snapshot(session, rule))
                except Exception as exc:
                    logger.exception("Alert rule %s could not be loaded", rule.id)
                    unreadable.append(RuleEvaluationOutcome(
                        rule.id, RuleOutcomeStatus.FAILED, error=str(exc) or exc.__class__.__name__,
                    ))

        # Forget rules that were disabled or deleted
        for rule_id in list(self._last_evaluated):
            if rule_id not in enabled_ids:
                del self._last_evaluated[rule_id]

        # Marked before evaluation so a failing rule still waits out its interval
        for rule_id in [s.id for s in snapshots] + [o.rule_id for o in unreadable]:
            self._last_evaluated[rule_id] = now

        if not snapshots:
            return unreadable

        semaphore = asyncio.Semaphore(self.settings.alert_max_concurrency)

        async def _bounded(snap: RuleSnapshot) -> RuleEvaluationOutcome:
            async with semaphore:
                return await self._evaluate_isolated(snap)

        outcomes = unreadable + list(await asyncio.gather(*(_bounded(s) for s in snapshots)))
        triggered = sum(1 for o in outcomes if o.status == RuleOutcomeStatus.TRIGGERED)
        logger.info(
            "Alert engine: evaluated %d rules, %d new alerts", len(outcomes), triggered,
        )
        return outcomes

    async def _snapshot(self, session: AsyncSession, rule: AlertRule) -> RuleSnapshot:
        subdomain = None
        tenant_active = True
        if rule.tenant_id is not None:
            tenant = await TenantRepository(session).get_by_id(rule.tenant_id)
            subdomain = tenant.subdomain if tenant else None
            tenant_active = tenant is not None and tenant.status == TenantStatus.ACTIVE
        return RuleSnapshot(
            id=rule.id,
            name=rule.name,
            tenant_id=rule.tenant_id,
            subdomain=subdomain,
            tenant_active=tenant_active,
            query=render_query(rule.metric_query, subdomain),
            operator=ConditionOperator(rule.operator),
            threshold=rule.threshold,
            severity=AlertSeverity(rule.severity),
            targets=rule_targets(rule),
        )

    async def _evaluate_isolated(self, snap: RuleSnapshot) -> RuleEvaluationOutcome:
        try:
            return await self.evaluate_rule(snap)
        except Exception as exc:
            logger.exception("Evaluation of alert rule %s failed", snap.id)
            return RuleEvaluationOutcome(
                snap.id, RuleOutcomeStatus.FAILED, error=str(exc) or exc.__class__.__name__,
            )

    async def evaluate_rule(self, snap: RuleSnapshot) -> RuleEvaluationOutcome:
        if not snap.tenant_active:
            return RuleEvaluationOutcome(snap.id, RuleOutcomeStatus.SKIPPED, error="Tenant is not active")

        try:
            samples = await asyncio.wait_for(
                self.metrics.query(snap.query), timeout=self.settings.metrics_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Metrics query for rule %s timed out", snap.id)
            return RuleEvaluationOutcome(snap.id, RuleOutcomeStatus.SKIPPED, error="Metrics query timed out")
        except TransientQueryError as exc:
            logger.warning("Metrics query for rule %s failed: %s", snap.id, exc)
            return RuleEvaluationOutcome(snap.id, RuleOutcomeStatus.SKIPPED, error=str(exc))

        breach = next(
            (s for s in samples if condition_met(snap.operator, s.value, snap.threshold)), None,
        )
        if breach is None:
            return RuleEvaluationOutcome(snap.id, RuleOutcomeStatus.NOT_MET)
        return await self._trigger(snap, breach)

    async def _trigger(self, snap: RuleSnapshot, sample: MetricSample) -> RuleEvaluationOutcome:
        async with self.session_factory() as session:
            alerts = AlertRepository(session)
            existing = await alerts.get_active_alert_by_rule_and_tenant(snap.id, snap.tenant_id)
            if existing is not None:
                return RuleEvaluationOutcome(
                    snap.id, RuleOutcomeStatus.DEDUPLICATED, alert_id=existing.id,
                )

            alert = Alert(
                rule_id=snap.id,
                tenant_id=snap.tenant_id,
                dedup_key=dedup_key_for(snap.id, snap.tenant_id),
                severity=snap.severity,
                status=AlertStatus.ACTIVE,
                context=json.dumps({
                    "rule_name": snap.name,
                    "tenant": snap.subdomain,
                    "value": sample.value,
                    "labels": sample.labels,
                    "threshold": snap.threshold,
                    "operator": str(snap.operator),
                    "query": snap.query,
                }),
            )
            try:
                await alerts.save(alert)
            except IntegrityError:
                # Another evaluator raised the same alert first.
                await session.rollback()
                return RuleEvaluationOutcome(snap.id, RuleOutcomeStatus.DEDUPLICATED)

            logger.info(
                "Alert %s raised for rule %s (value=%s threshold=%s)",
                alert.id, snap.name, sample.value, snap.threshold,
            )
            await publish_events(session, [
                DomainEvent(
                    WebhookEvent.ALERT_TRIGGERED,
                    snap.tenant_id,
                    {
                        "alert_id": str(alert.id),
                        "rule_id": str(snap.id),
                        "rule_name": snap.name,
                        "severity": str(snap.severity),
                        "value": sample.value,
                        "threshold": snap.threshold,
                    },
                )
            ])

        notifications = await self.dispatcher.send_all(alert, snap.targets)
        return RuleEvaluationOutcome(
            snap.id,
            RuleOutcomeStatus.TRIGGERED,
            alert_id=alert.id,
            notifications=notifications,
        )


async def resolve_alert(
    session: AsyncSession,
    alert_id: uuid.UUID,
    resolved_by: str,
    resolution: str = "",
) -> tuple[Alert | None, list[DomainEvent]]:
    """Operator resolution. Does not re-check the underlying condition."""
    alerts = AlertRepository(session)
    alert = await alerts.get(alert_id)
    if alert is None:
        return None, []
    if alert.status != AlertStatus.ACTIVE:
        raise InvalidStatusTransition("Alert", alert.status, AlertStatus.RESOLVED)

    alert.status = AlertStatus.RESOLVED
    alert.resolved_at = utcnow()
    alert.resolved_by = resolved_by
    alert.resolution = resolution or None
    await alerts.save(alert)

    event = DomainEvent(
        WebhookEvent.ALERT_RESOLVED,
        alert.tenant_id,
        {
            "alert_id": str(alert.id),
            "rule_id": str(alert.rule_id),
            "resolved_by": resolved_by,
            "resolution": resolution,
        },
    )
    return alert, [event]
