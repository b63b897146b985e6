"""Health check scheduler — periodic per-tenant health probes.

Each cycle loads every active tenant, then runs, concurrently per tenant and
across tenants (bounded by a semaphore):
  - database     connect to the tenant database and run SELECT 1
  - application  HTTP liveness probe of the tenant application
  - identity     OpenID discovery document of the tenant realm
  - module:<x>   one check per enabled module, from an explicit registry

Sub-check failures become unhealthy sub-checks; a tenant-level failure
becomes a failed outcome for that tenant only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app.core.config import Settings, get_settings
from app.core.security import decrypt_value
from app.models.health import HealthCheckResult, HealthStatus, SubCheck
from app.models.tenant import ModuleType, Tenant
from app.models.webhook import WebhookEvent
from app.services.events import DomainEvent, publish_events
from app.services.registry import HealthRepository, InfrastructureRepository, TenantRepository

logger = logging.getLogger(__name__)

_SEVERITY: dict[HealthStatus, int] = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


def aggregate_status(checks: Iterable[SubCheck]) -> HealthStatus:
    """Worst sub-check status wins: unhealthy > degraded > healthy."""
    worst = HealthStatus.HEALTHY
    for check in checks:
        if _SEVERITY[check.status] > _SEVERITY[worst]:
            worst = check.status
    return worst


@dataclass
class CheckTarget:
    """Plain snapshot of what the checks need — no ORM objects cross tasks."""
    tenant_id: uuid.UUID
    subdomain: str
    has_infrastructure: bool = False
    application_url: str | None = None
    database_url: str | None = None
    identity_realm: str | None = None
    modules: list[ModuleType] = field(default_factory=list)


@dataclass
class TenantCheckOutcome:
    tenant_id: uuid.UUID
    subdomain: str
    overall_status: HealthStatus | None = None
    checks: list[SubCheck] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ModuleHealthCheck(Protocol):
    async def __call__(self, target: CheckTarget, client: httpx.AsyncClient) -> SubCheck: ...


# ── Individual checks ─────────────────────────────────────────

def _status_from_response(
    resp: httpx.Response, latency_ms: int, degraded_latency_ms: int
) -> tuple[HealthStatus, str]:
    if resp.is_success:
        if latency_ms > degraded_latency_ms:
            return HealthStatus.DEGRADED, f"Slow response ({latency_ms} ms)"
        return HealthStatus.HEALTHY, f"HTTP {resp.status_code}"
    if resp.status_code >= 500:
        return HealthStatus.UNHEALTHY, f"HTTP {resp.status_code}"
    return HealthStatus.DEGRADED, f"HTTP {resp.status_code}"


def _async_driver_url(url: str) -> str:
    """Tenant databases are PostgreSQL; probe them through asyncpg."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


async def check_database(target: CheckTarget, timeout: float) -> SubCheck:
    if not target.database_url:
        return SubCheck(
            name="database",
            status=HealthStatus.UNHEALTHY,
            message="No database endpoint recorded",
        )
    engine = create_async_engine(_async_driver_url(target.database_url), poolclass=NullPool)
    try:
        async def _ping() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        await asyncio.wait_for(_ping(), timeout=timeout)
    except asyncio.TimeoutError:
        return SubCheck(
            name="database",
            status=HealthStatus.UNHEALTHY,
            message=f"Connection timed out after {timeout:g}s",
        )
    finally:
        await engine.dispose()
    return SubCheck(name="database", status=HealthStatus.HEALTHY, message="Connected")


async def probe_http(
    name: str,
    url: str,
    client: httpx.AsyncClient,
    timeout: float,
    degraded_latency_ms: int,
) -> SubCheck:
    t0 = time.monotonic()
    try:
        resp = await client.get(url, timeout=timeout)
    except httpx.TimeoutException:
        return SubCheck(
            name=name, status=HealthStatus.UNHEALTHY, message=f"Timed out after {timeout:g}s",
        )
    except httpx.HTTPError as exc:
        return SubCheck(
            name=name, status=HealthStatus.UNHEALTHY, message=f"Unreachable: {exc}"[:500],
        )
    latency = int((time.monotonic() - t0) * 1000)
    status, message = _status_from_response(resp, latency, degraded_latency_ms)
    return SubCheck(name=name, status=status, message=message)


class HttpModuleCheck:
    """Probe the module's own health endpoint inside the tenant application."""

    def __init__(self, module: ModuleType, settings: Settings | None = None) -> None:
        self.module = module
        self.settings = settings or get_settings()

    async def __call__(self, target: CheckTarget, client: httpx.AsyncClient) -> SubCheck:
        name = f"module:{self.module}"
        if not target.application_url:
            return SubCheck(name=name, status=HealthStatus.UNHEALTHY, message="No application URL")
        url = f"{target.application_url.rstrip('/')}/modules/{self.module}/health"
        return await probe_http(
            name,
            url,
            client,
            self.settings.health_http_timeout_seconds,
            self.settings.health_degraded_latency_ms,
        )


def default_module_checks(settings: Settings | None = None) -> dict[ModuleType, ModuleHealthCheck]:
    return {module: HttpModuleCheck(module, settings) for module in ModuleType}


# ── Scheduler ─────────────────────────────────────────────────

class HealthCheckScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        module_checks: dict[ModuleType, ModuleHealthCheck] | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.module_checks = (
            module_checks if module_checks is not None else default_module_checks(self.settings)
        )
        self._transport = transport

    async def run_cycle(self) -> list[TenantCheckOutcome]:
        async with self.session_factory() as session:
            tenants = await TenantRepository(session).get_active_tenants()
            targets = [await self._load_target(session, t) for t in tenants]

        if not targets:
            logger.info("Health scheduler: no active tenants")
            return []

        semaphore = asyncio.Semaphore(self.settings.health_max_concurrency)

        async def _bounded(target: CheckTarget) -> TenantCheckOutcome:
            async with semaphore:
                return await self._check_and_record(target, client)

        async with httpx.AsyncClient(
            timeout=self.settings.health_http_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": "StackWarden-Health/1.0"},
            transport=self._transport,
        ) as client:
            outcomes = await asyncio.gather(*(_bounded(t) for t in targets))

        failed = sum(1 for o in outcomes if not o.ok)
        logger.info(
            "Health scheduler: checked %d tenants (%d failed to record)", len(outcomes), failed,
        )
        return list(outcomes)

    async def _load_target(self, session: AsyncSession, tenant: Tenant) -> CheckTarget:
        target = CheckTarget(tenant_id=tenant.id, subdomain=tenant.subdomain)
        infra = await InfrastructureRepository(session).get_current(tenant.id)
        if infra is None:
            return target

        target.has_infrastructure = True
        target.application_url = infra.application_url
        target.identity_realm = infra.identity_realm
        target.modules = await TenantRepository(session).enabled_modules(tenant.id)
        if infra.database_url:
            try:
                target.database_url = decrypt_value(infra.database_url)
            except Exception:
                logger.warning("Could not decrypt database URL for tenant %s", tenant.subdomain)
        return target

    async def check_tenant(
        self, target: CheckTarget, client: httpx.AsyncClient
    ) -> list[SubCheck]:
        if not target.has_infrastructure:
            return [
                SubCheck(
                    name="infrastructure",
                    status=HealthStatus.UNHEALTHY,
                    message="No deployed infrastructure record for tenant",
                )
            ]

        s = self.settings
        named: list[tuple[str, Callable[[], Awaitable[SubCheck]]]] = [
            ("database", lambda: check_database(target, s.health_db_timeout_seconds)),
            ("application", lambda: self._check_application(target, client)),
            ("identity", lambda: self._check_identity(target, client)),
        ]
        for module in sorted(target.modules):
            named.append((f"module:{module}", self._module_call(module, target, client)))

        return list(await asyncio.gather(*(self._run_sub_check(n, fn) for n, fn in named)))

    def _module_call(
        self, module: ModuleType, target: CheckTarget, client: httpx.AsyncClient
    ) -> Callable[[], Awaitable[SubCheck]]:
        check = self.module_checks.get(module)
        if check is None:
            async def _missing() -> SubCheck:
                return SubCheck(
                    name=f"module:{module}",
                    status=HealthStatus.DEGRADED,
                    message="No health check registered for module",
                )
            return _missing
        return lambda: check(target, client)

    async def _run_sub_check(
        self, name: str, call: Callable[[], Awaitable[SubCheck]]
    ) -> SubCheck:
        t0 = time.monotonic()
        try:
            result = await call()
        except Exception as exc:
            logger.warning("Health sub-check %s raised: %s", name, exc)
            result = SubCheck(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=(str(exc) or exc.__class__.__name__)[:500],
            )
        result.name = name
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        return result

    async def _check_application(self, target: CheckTarget, client: httpx.AsyncClient) -> SubCheck:
        if not target.application_url:
            return SubCheck(
                name="application", status=HealthStatus.UNHEALTHY, message="No application URL",
            )
        url = f"{target.application_url.rstrip('/')}{self.settings.health_probe_path}"
        return await probe_http(
            "application",
            url,
            client,
            self.settings.health_http_timeout_seconds,
            self.settings.health_degraded_latency_ms,
        )

    async def _check_identity(self, target: CheckTarget, client: httpx.AsyncClient) -> SubCheck:
        if not target.identity_realm:
            return SubCheck(
                name="identity", status=HealthStatus.UNHEALTHY, message="No identity realm",
            )
        base = self.settings.identity_base_url.rstrip("/")
        url = f"{base}/realms/{target.identity_realm}/.well-known/openid-configuration"
        check = await probe_http(
            "identity",
            url,
            client,
            self.settings.health_http_timeout_seconds,
            self.settings.health_degraded_latency_ms,
        )
        # A realm that does not answer discovery cannot issue tokens.
        if check.status == HealthStatus.DEGRADED and not check.message.startswith("Slow"):
            check.status = HealthStatus.UNHEALTHY
        return check

    async def _check_and_record(
        self, target: CheckTarget, client: httpx.AsyncClient
    ) -> TenantCheckOutcome:
        outcome = TenantCheckOutcome(tenant_id=target.tenant_id, subdomain=target.subdomain)
        try:
            checks = await self.check_tenant(target, client)
            overall = aggregate_status(checks)
            await self._record(target, overall, checks)
        except Exception as exc:
            logger.exception("Health check for tenant %s failed", target.subdomain)
            outcome.error = str(exc) or exc.__class__.__name__
            return outcome
        outcome.overall_status = overall
        outcome.checks = checks
        return outcome

    async def _record(
        self, target: CheckTarget, overall: HealthStatus, checks: list[SubCheck]
    ) -> None:
        result = HealthCheckResult(
            tenant_id=target.tenant_id,
            overall_status=overall,
            checks=json.dumps([c.model_dump(mode="json") for c in checks]),
        )
        async with self.session_factory() as session:
            await HealthRepository(session).save(result)
            event = DomainEvent(
                WebhookEvent.HEALTH_CHECK_RECORDED,
                target.tenant_id,
                {
                    "subdomain": target.subdomain,
                    "overall_status": str(overall),
                    "checks": [c.model_dump(mode="json") for c in checks],
                },
            )
            await publish_events(session, [event])
