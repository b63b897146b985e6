"""ARQ worker entrypoint — deployment jobs plus the two monitoring schedulers."""

import asyncio

from arq import cron
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.workers.deploy import deploy_tenant
from app.workers.monitoring import evaluate_alert_rules, run_health_checks


def _redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    settings = get_settings()
    # redis://host:port/db
    url = settings.redis_url
    # Strip scheme
    rest = url.split("://", 1)[1] if "://" in url else url
    host_port, _, db = rest.partition("/")
    host, _, port = host_port.partition(":")
    return RedisSettings(
        host=host or "localhost",
        port=int(port) if port else 6379,
        database=int(db) if db else 0,
    )


def _every(step: int) -> set[int]:
    """Cron field values for "every ``step`` units" within a 60-unit field.

    ``step`` is a divisor of 60, enforced by ``Settings``.
    """
    return set(range(0, 60, step))


async def startup(ctx: dict) -> None:
    """Called when the worker starts. Builds the long-lived scheduler objects."""
    from app.core.database import async_session_factory, init_db
    from app.services.alert_engine import AlertEvaluationEngine
    from app.services.health_monitor import HealthCheckScheduler
    from app.services.metrics import PrometheusMetricsBackend
    from app.services.notifications import NotificationDispatcher
    from app.services.provisioners import default_provisioners

    await init_db()
    ctx["session_factory"] = async_session_factory
    ctx["provisioners"] = default_provisioners()
    ctx["health_scheduler"] = HealthCheckScheduler(async_session_factory)
    ctx["alert_engine"] = AlertEvaluationEngine(
        async_session_factory,
        PrometheusMetricsBackend(),
        NotificationDispatcher(async_session_factory),
    )


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""
    from app.core.database import engine
    await engine.dispose()


_settings = get_settings()


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [deploy_tenant]
    # unique=True: with several workers running, each tick fires on only one of them
    cron_jobs = [
        cron(
            run_health_checks,
            minute=_every(_settings.health_check_interval_minutes),
            second=0,
            unique=True,
            timeout=_settings.health_check_interval_minutes * 60,
        ),
        cron(
            evaluate_alert_rules,
            second=_every(_settings.alert_engine_tick_seconds),
            unique=True,
            timeout=_settings.alert_engine_tick_seconds * 4,
        ),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 10
    job_timeout = 1800  # a full stack deployment runs six provisioning steps


if __name__ == "__main__":
    from arq import run_worker
    asyncio.run(run_worker(WorkerSettings))  # type: ignore[arg-type]
