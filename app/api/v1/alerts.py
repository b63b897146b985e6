"""Alert rules, active alerts and notification delivery receipts."""

import json
import uuid

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import func
from sqlmodel import select

from app.api.deps import Operator, Session, SessionFactory
from app.core.errors import InvalidStatusTransition
from app.models.alert import (
    Alert,
    AlertNotificationRead,
    AlertRead,
    AlertResolve,
    AlertRule,
    AlertRuleCreate,
    AlertRuleRead,
    AlertRuleUpdate,
)
from app.models.base import utcnow
from app.models.tenant import Tenant
from app.services.alert_engine import resolve_alert
from app.services.events import publish_events
from app.services.notifications import NotificationDispatcher
from app.services.registry import AlertRepository, AlertRuleRepository, rule_targets

router = APIRouter(tags=["alerts"])


def _rule_to_read(rule: AlertRule) -> AlertRuleRead:
    return AlertRuleRead(
        id=rule.id,
        tenant_id=rule.tenant_id,
        name=rule.name,
        metric_query=rule.metric_query,
        operator=rule.operator,
        threshold=rule.threshold,
        evaluation_interval_seconds=rule.evaluation_interval_seconds,
        severity=rule.severity,
        is_enabled=rule.is_enabled,
        targets=rule_targets(rule),
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _alert_to_read(alert: Alert) -> AlertRead:
    context = json.loads(alert.context) if isinstance(alert.context, str) else alert.context
    return AlertRead(
        id=alert.id,
        rule_id=alert.rule_id,
        tenant_id=alert.tenant_id,
        severity=alert.severity,
        status=alert.status,
        context=context,
        triggered_at=alert.triggered_at,
        resolved_at=alert.resolved_at,
        resolved_by=alert.resolved_by,
        resolution=alert.resolution,
    )


# ── Alert rules ───────────────────────────────────────────────

@router.post("/alert-rules", response_model=AlertRuleRead, status_code=status.HTTP_201_CREATED)
async def create_alert_rule(
    body: AlertRuleCreate,
    _operator: Operator,
    session: Session,
) -> AlertRuleRead:
    if body.tenant_id is not None and await session.get(Tenant, body.tenant_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")

    rule = AlertRule(
        tenant_id=body.tenant_id,
        name=body.name,
        metric_query=body.metric_query,
        operator=body.operator,
        threshold=body.threshold,
        evaluation_interval_seconds=body.evaluation_interval_seconds,
        severity=body.severity,
        is_enabled=body.is_enabled,
        targets=json.dumps([t.model_dump(mode="json") for t in body.targets]),
    )
    await AlertRuleRepository(session).save(rule)
    return _rule_to_read(rule)


@router.get("/alert-rules", response_model=list[AlertRuleRead])
async def list_alert_rules(
    _operator: Operator,
    session: Session,
    tenant_id: uuid.UUID | None = None,
) -> list[AlertRuleRead]:
    rules = await AlertRuleRepository(session).list_rules(tenant_id)
    return [_rule_to_read(r) for r in rules]


@router.get("/alert-rules/{rule_id}", response_model=AlertRuleRead)
async def get_alert_rule(
    rule_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> AlertRuleRead:
    rule = await _get_rule_or_404(rule_id, session)
    return _rule_to_read(rule)


@router.patch("/alert-rules/{rule_id}", response_model=AlertRuleRead)
async def update_alert_rule(
    rule_id: uuid.UUID,
    body: AlertRuleUpdate,
    _operator: Operator,
    session: Session,
) -> AlertRuleRead:
    rule = await _get_rule_or_404(rule_id, session)

    update_data = body.model_dump(exclude_unset=True)
    if "targets" in update_data:
        targets = body.targets or []
        update_data["targets"] = json.dumps([t.model_dump(mode="json") for t in targets])
    for key, value in update_data.items():
        setattr(rule, key, value)
    rule.updated_at = utcnow()

    await AlertRuleRepository(session).save(rule)
    return _rule_to_read(rule)


@router.delete("/alert-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert_rule(
    rule_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> None:
    """Delete a rule that never fired. Rules with alert history should be disabled instead."""
    rule = await _get_rule_or_404(rule_id, session)
    alert_count = (await session.execute(
        select(func.count()).select_from(Alert).where(Alert.rule_id == rule_id)
    )).scalar_one()
    if alert_count:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Rule has alert history; disable it instead",
        )
    await AlertRuleRepository(session).delete(rule)


# ── Alerts ────────────────────────────────────────────────────

@router.get("/alerts", response_model=list[AlertRead])
async def list_active_alerts(
    _operator: Operator,
    session: Session,
    tenant_id: uuid.UUID | None = None,
) -> list[AlertRead]:
    """Active alerts for a tenant, or platform-wide alerts when no tenant is given."""
    alerts = await AlertRepository(session).get_active_alerts(tenant_id)
    return [_alert_to_read(a) for a in alerts]


@router.get("/alerts/{alert_id}", response_model=AlertRead)
async def get_alert(
    alert_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> AlertRead:
    alert = await AlertRepository(session).get(alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return _alert_to_read(alert)


@router.post("/alerts/{alert_id}/resolve", response_model=AlertRead)
async def resolve(
    alert_id: uuid.UUID,
    body: AlertResolve,
    operator: Operator,
    session: Session,
) -> AlertRead:
    try:
        alert, events = await resolve_alert(
            session, alert_id, resolved_by=operator.subject, resolution=body.resolution,
        )
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    await publish_events(session, events)
    return _alert_to_read(alert)


@router.get("/alerts/{alert_id}/notifications", response_model=list[AlertNotificationRead])
async def list_notifications(
    alert_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> list[AlertNotificationRead]:
    alerts = AlertRepository(session)
    if await alerts.get(alert_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return [AlertNotificationRead.model_validate(n) for n in await alerts.notifications(alert_id)]


@router.post("/notifications/{notification_id}/delivered", response_model=AlertNotificationRead)
async def confirm_delivery(
    notification_id: uuid.UUID,
    _operator: Operator,
    session_factory: SessionFactory,
) -> AlertNotificationRead:
    """Provider delivery receipt: moves a sent notification to delivered."""
    dispatcher = NotificationDispatcher(session_factory, channels={})
    try:
        notification = await dispatcher.mark_delivered(notification_id)
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if notification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return AlertNotificationRead.model_validate(notification)


# ── Internal helper ───────────────────────────────────────────

async def _get_rule_or_404(rule_id: uuid.UUID, session) -> AlertRule:
    rule = await AlertRuleRepository(session).get(rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert rule not found")
    return rule
