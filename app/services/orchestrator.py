"""Deployment orchestrator — provisions a tenant's isolated stack.

Flow (strictly sequential, later steps use identifiers from earlier ones):
  1. Allocate the tenant namespace
  2. Provision the relational database, then the document-store database
  3. Deploy the cache into the namespace
  4. Create the identity realm and client credentials
  5. Deploy the application workload with all endpoints injected

Any failure (or a cancellation request) tears the namespace down exactly
once, marks the infrastructure record failed and leaves the tenant pending.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.core.errors import DeploymentCancelled, ProvisioningError
from app.core.security import encrypt_value
from app.models.base import utcnow
from app.models.infrastructure import InfrastructureStatus, TenantInfrastructure
from app.models.tenant import Tenant, TenantStatus
from app.models.webhook import WebhookEvent
from app.services.events import DomainEvent, publish_events
from app.services.provisioners import ApplicationSpec, Provisioners
from app.services.registry import InfrastructureRepository, TenantRepository, transition_tenant

logger = logging.getLogger(__name__)

T = TypeVar("T")

NAMESPACE_MAX_LENGTH = 63


@dataclass
class DeploymentInfo:
    tenant_id: uuid.UUID
    infrastructure_id: uuid.UUID
    namespace: str
    application_url: str
    identity_realm: str
    modules: list[str]
    deployed_at: datetime


@dataclass
class DeploymentResult:
    success: bool
    info: DeploymentInfo | None = None
    error: str | None = None
    events: list[DomainEvent] = field(default_factory=list)

    @classmethod
    def failure(cls, error: str, events: list[DomainEvent] | None = None) -> DeploymentResult:
        return cls(success=False, error=error, events=events or [])


def namespace_for(subdomain: str, prefix: str | None = None) -> str:
    """Deterministic namespace name for a tenant subdomain (max 63 chars).

    Names that would not fit are shortened and suffixed with a hash of the
    full subdomain, so two long subdomains sharing a prefix never collide.
    """
    prefix = prefix if prefix is not None else get_settings().namespace_prefix
    name = f"{prefix}-{subdomain}"
    if len(name) <= NAMESPACE_MAX_LENGTH:
        return name
    digest = hashlib.sha256(subdomain.encode()).hexdigest()[:8]
    head = name[: NAMESPACE_MAX_LENGTH - len(digest) - 1].rstrip("-")
    return f"{head}-{digest}"


class DeploymentOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        provisioners: Provisioners,
        step_timeout: float | None = None,
    ) -> None:
        self.session = session
        self.provisioners = provisioners
        self.step_timeout = (
            step_timeout if step_timeout is not None
            else get_settings().provisioner_timeout_seconds
        )
        self.tenants = TenantRepository(session)
        self.infrastructure = InfrastructureRepository(session)

    async def deploy(
        self,
        tenant_id: uuid.UUID,
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentResult:
        tenant = await self.tenants.get_by_id(tenant_id)
        if tenant is None:
            return DeploymentResult.failure(f"Tenant {tenant_id} not found")
        if tenant.status != TenantStatus.PENDING:
            return DeploymentResult.failure(
                f"Tenant '{tenant.subdomain}' is {tenant.status}; only pending tenants can be deployed"
            )

        existing = await self.infrastructure.get_current(tenant.id)
        if existing is not None:
            return DeploymentResult.failure(
                f"Tenant '{tenant.subdomain}' already has infrastructure in status '{existing.status}'"
            )

        modules = [str(m) for m in await self.tenants.enabled_modules(tenant.id)]
        infra = TenantInfrastructure(
            tenant_id=tenant.id,
            namespace=namespace_for(tenant.subdomain),
            status=InfrastructureStatus.DEPLOYING,
        )
        subdomain = tenant.subdomain
        try:
            await self.infrastructure.save(infra)
        except IntegrityError:
            # Another deployment won the race for the current-record slot.
            await self.session.rollback()
            return DeploymentResult.failure(
                f"Tenant '{subdomain}' already has a deployment in progress"
            )

        logger.info("Deploying tenant %s into namespace %s", tenant.subdomain, infra.namespace)
        try:
            app_url = await self._run_steps(tenant, infra, modules, cancel_event)
        except asyncio.CancelledError:
            await asyncio.shield(self._fail(tenant, infra, DeploymentCancelled("worker")))
            raise
        except Exception as exc:
            return await self._fail(tenant, infra, exc)

        namespace = infra.namespace
        try:
            return await self._complete(tenant, infra, app_url, modules)
        except Exception as exc:
            logger.exception("Recording deployment of tenant %s failed", subdomain)
            # The failed commit expired every loaded instance.
            await self.session.rollback()
            try:
                await self.session.refresh(tenant)
                await self.session.refresh(infra)
            except Exception:
                await self._cleanup(namespace)
                raise
            return await self._fail(tenant, infra, exc)

    async def _run_steps(
        self,
        tenant: Tenant,
        infra: TenantInfrastructure,
        modules: list[str],
        cancel_event: asyncio.Event | None,
    ) -> str:
        p = self.provisioners
        namespace = infra.namespace

        await self._step("namespace", cancel_event, lambda: p.namespaces.allocate(namespace))

        db = await self._step(
            "relational_db", cancel_event, lambda: p.relational_db.provision_database(namespace),
        )
        infra.database_url = encrypt_value(db.connection_url)

        docs = await self._step(
            "document_db", cancel_event, lambda: p.document_db.provision_document_db(namespace),
        )
        infra.document_store_url = docs.connection_url
        infra.document_database = docs.database

        cache = await self._step("cache", cancel_event, lambda: p.cache.deploy_cache(namespace))
        infra.cache_url = cache.connection_url

        realm = await self._step(
            "identity", cancel_event, lambda: p.identity.create_realm(namespace, tenant.subdomain),
        )
        infra.identity_realm = realm.realm
        infra.identity_client_id = realm.client_id
        infra.identity_client_secret = encrypt_value(realm.client_secret)

        spec = ApplicationSpec(
            namespace=namespace,
            subdomain=tenant.subdomain,
            database_url=db.connection_url,
            document_store_url=docs.connection_url,
            document_database=docs.database,
            cache_url=cache.connection_url,
            identity_realm=realm.realm,
            identity_client_id=realm.client_id,
            identity_client_secret=realm.client_secret,
            hostname=f"{tenant.subdomain}.{get_settings().base_domain}",
            modules=modules,
        )
        app = await self._step(
            "application", cancel_event, lambda: p.application.deploy_application(spec),
        )
        return app.url

    async def _step(
        self,
        name: str,
        cancel_event: asyncio.Event | None,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        if cancel_event is not None and cancel_event.is_set():
            raise DeploymentCancelled(name)
        logger.info("Deployment step %s started", name)
        try:
            return await asyncio.wait_for(call(), timeout=self.step_timeout)
        except asyncio.TimeoutError as exc:
            raise ProvisioningError(name, f"timed out after {self.step_timeout:g}s") from exc
        except ProvisioningError:
            raise
        except Exception as exc:
            raise ProvisioningError(name, str(exc) or exc.__class__.__name__) from exc

    async def _cleanup(self, namespace: str) -> str | None:
        """Best-effort teardown. Returns an error description instead of raising."""
        try:
            await asyncio.wait_for(
                self.provisioners.namespaces.teardown(namespace), timeout=self.step_timeout,
            )
        except Exception as exc:
            logger.exception("Cleanup of namespace %s failed", namespace)
            return str(exc) or exc.__class__.__name__
        logger.info("Namespace %s torn down", namespace)
        return None

    async def _fail(
        self, tenant: Tenant, infra: TenantInfrastructure, exc: BaseException
    ) -> DeploymentResult:
        logger.warning("Deployment of tenant %s failed: %s", tenant.subdomain, exc)
        error = f"Deployment failed: {exc}"
        cleanup_error = await self._cleanup(infra.namespace)
        if cleanup_error:
            error = f"{error}; cleanup failed: {cleanup_error}"

        infra.status = InfrastructureStatus.FAILED
        infra.error_message = error[:2000]
        infra.failed_at = utcnow()
        infra.updated_at = infra.failed_at
        await self.infrastructure.save(infra)

        event = DomainEvent(
            WebhookEvent.DEPLOYMENT_FAILED,
            tenant.id,
            {
                "subdomain": tenant.subdomain,
                "namespace": infra.namespace,
                "error": error[:500],
            },
        )
        return DeploymentResult.failure(error, [event])

    async def _complete(
        self,
        tenant: Tenant,
        infra: TenantInfrastructure,
        app_url: str,
        modules: list[str],
    ) -> DeploymentResult:
        now = utcnow()
        infra.application_url = app_url
        infra.status = InfrastructureStatus.DEPLOYED
        infra.deployed_at = now
        infra.updated_at = now

        events = [
            DomainEvent(
                WebhookEvent.INFRASTRUCTURE_DEPLOYED,
                tenant.id,
                {
                    "subdomain": tenant.subdomain,
                    "namespace": infra.namespace,
                    "application_url": app_url,
                },
            )
        ]
        events.extend(transition_tenant(tenant, TenantStatus.ACTIVE))
        await self.infrastructure.save(infra, tenant)

        logger.info("Tenant %s deployed at %s", tenant.subdomain, app_url)
        return DeploymentResult(
            success=True,
            info=DeploymentInfo(
                tenant_id=tenant.id,
                infrastructure_id=infra.id,
                namespace=infra.namespace,
                application_url=app_url,
                identity_realm=infra.identity_realm or "",
                modules=modules,
                deployed_at=now,
            ),
            events=events,
        )


async def deploy_tenant_infrastructure(
    tenant_id: uuid.UUID,
    session_factory: sessionmaker,
    provisioners: Provisioners,
    cancel_event: asyncio.Event | None = None,
) -> DeploymentResult:
    """DeployTenantInfrastructure command: deploy, then publish the emitted events."""
    async with session_factory() as session:
        orchestrator = DeploymentOrchestrator(session, provisioners)
        result = await orchestrator.deploy(tenant_id, cancel_event)
        await publish_events(session, result.events)
        return result
