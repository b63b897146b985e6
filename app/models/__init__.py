"""Import all models so SQLModel.metadata picks them up."""

from app.models.alert import (
    Alert,
    AlertNotification,
    AlertNotificationRead,
    AlertRead,
    AlertResolve,
    AlertRule,
    AlertRuleCreate,
    AlertRuleRead,
    AlertRuleUpdate,
    AlertSeverity,
    AlertStatus,
    ConditionOperator,
    NotificationChannelType,
    NotificationStatus,
    NotificationTarget,
)
from app.models.health import HealthCheckRead, HealthCheckResult, HealthStatus, SubCheck
from app.models.infrastructure import (
    InfrastructureRead,
    InfrastructureStatus,
    TenantInfrastructure,
)
from app.models.tenant import (
    ModuleType,
    Subscription,
    SubscriptionCreate,
    SubscriptionRead,
    Tenant,
    TenantCreate,
    TenantRead,
    TenantStatus,
)
from app.models.webhook import Webhook, WebhookCreate, WebhookCreated, WebhookEvent, WebhookRead

__all__ = [
    "Alert",
    "AlertNotification",
    "AlertNotificationRead",
    "AlertRead",
    "AlertResolve",
    "AlertRule",
    "AlertRuleCreate",
    "AlertRuleRead",
    "AlertRuleUpdate",
    "AlertSeverity",
    "AlertStatus",
    "ConditionOperator",
    "HealthCheckRead",
    "HealthCheckResult",
    "HealthStatus",
    "InfrastructureRead",
    "InfrastructureStatus",
    "ModuleType",
    "NotificationChannelType",
    "NotificationStatus",
    "NotificationTarget",
    "SubCheck",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionRead",
    "Tenant",
    "TenantCreate",
    "TenantInfrastructure",
    "TenantRead",
    "TenantStatus",
    "Webhook",
    "WebhookCreate",
    "WebhookCreated",
    "WebhookEvent",
    "WebhookRead",
]
