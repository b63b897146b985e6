"""Periodic jobs — tenant health checks and alert rule evaluation."""

from __future__ import annotations

import logging
from collections import Counter

from app.services.alert_engine import AlertEvaluationEngine
from app.services.health_monitor import HealthCheckScheduler

logger = logging.getLogger(__name__)


async def run_health_checks(ctx: dict) -> dict:
    """Cron job: one health check cycle across all active tenants.

    ``ctx["health_scheduler"]`` is built in the worker startup hook; tests
    inject a scheduler wired to their own session factory.
    """
    scheduler: HealthCheckScheduler = ctx["health_scheduler"]
    outcomes = await scheduler.run_cycle()
    by_status = Counter(str(o.overall_status) for o in outcomes if o.ok)
    failed = sum(1 for o in outcomes if not o.ok)
    if failed:
        logger.warning("Health cycle: %d tenants could not be recorded", failed)
    return {"checked": len(outcomes), "failed": failed, **by_status}


async def evaluate_alert_rules(ctx: dict) -> dict:
    """Cron job: evaluate every alert rule whose interval has elapsed."""
    engine: AlertEvaluationEngine = ctx["alert_engine"]
    outcomes = await engine.run_cycle()
    counts = Counter(str(o.status) for o in outcomes)
    return {"evaluated": len(outcomes), **counts}
