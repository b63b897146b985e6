"""Tenant registry endpoints and the DeployTenantInfrastructure command."""

import uuid
from datetime import datetime

from arq.connections import ArqRedis, create_pool
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel
from sqlmodel import select

from app.api.deps import Operator, ProvisionerSet, Session, SessionFactory
from app.core.errors import InvalidStatusTransition
from app.models.base import utcnow
from app.models.infrastructure import InfrastructureRead
from app.models.tenant import (
    Subscription,
    SubscriptionCreate,
    SubscriptionRead,
    Tenant,
    TenantCreate,
    TenantRead,
    TenantStatus,
)
from app.services.events import publish_events
from app.services.orchestrator import deploy_tenant_infrastructure
from app.services.registry import InfrastructureRepository, TenantRepository, transition_tenant
from app.workers.main import _redis_settings

router = APIRouter(prefix="/tenants", tags=["tenants"])


class DeploymentResponse(BaseModel):
    success: bool
    tenant_id: uuid.UUID
    infrastructure_id: uuid.UUID
    namespace: str
    application_url: str
    identity_realm: str
    modules: list[str]
    deployed_at: datetime


class DeploymentQueued(BaseModel):
    tenant_id: uuid.UUID
    job_id: str


# ── Registry ──────────────────────────────────────────────────

@router.post("", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
async def create_tenant(
    body: TenantCreate,
    _operator: Operator,
    session: Session,
) -> TenantRead:
    """Register a new tenant in status pending. Infrastructure is deployed separately."""
    tenants = TenantRepository(session)
    if await tenants.subdomain_exists(body.subdomain):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Subdomain '{body.subdomain}' is already taken",
        )

    tenant = Tenant(name=body.name, subdomain=body.subdomain)
    session.add(tenant)
    await session.flush()  # populate tenant.id

    now = utcnow()
    for module in sorted(set(body.modules)):
        session.add(Subscription(tenant_id=tenant.id, module=module, started_at=now))
    await session.commit()
    await session.refresh(tenant)
    return TenantRead.model_validate(tenant)


@router.get("", response_model=list[TenantRead])
async def list_tenants(
    _operator: Operator,
    session: Session,
    tenant_status: TenantStatus | None = None,
) -> list[TenantRead]:
    stmt = select(Tenant).order_by(Tenant.created_at.desc())  # type: ignore[attr-defined]
    if tenant_status is not None:
        stmt = stmt.where(Tenant.status == tenant_status)
    result = await session.execute(stmt)
    return [TenantRead.model_validate(t) for t in result.scalars().all()]


@router.get("/{tenant_id}", response_model=TenantRead)
async def get_tenant(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> TenantRead:
    tenant = await _get_or_404(tenant_id, session)
    return TenantRead.model_validate(tenant)


async def _transition(tenant_id: uuid.UUID, target: TenantStatus, session) -> TenantRead:
    tenant = await _get_or_404(tenant_id, session)
    try:
        events = transition_tenant(tenant, target)
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await TenantRepository(session).save(tenant)
    await publish_events(session, events)
    return TenantRead.model_validate(tenant)


@router.post("/{tenant_id}/suspend", response_model=TenantRead)
async def suspend_tenant(tenant_id: uuid.UUID, _operator: Operator, session: Session) -> TenantRead:
    return await _transition(tenant_id, TenantStatus.SUSPENDED, session)


@router.post("/{tenant_id}/reinstate", response_model=TenantRead)
async def reinstate_tenant(tenant_id: uuid.UUID, _operator: Operator, session: Session) -> TenantRead:
    tenant = await _get_or_404(tenant_id, session)
    if tenant.status != TenantStatus.SUSPENDED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only suspended tenants can be reinstated",
        )
    return await _transition(tenant_id, TenantStatus.ACTIVE, session)


@router.post("/{tenant_id}/cancel", response_model=TenantRead)
async def cancel_tenant(tenant_id: uuid.UUID, _operator: Operator, session: Session) -> TenantRead:
    return await _transition(tenant_id, TenantStatus.CANCELLED, session)


# ── Subscriptions ─────────────────────────────────────────────

@router.get("/{tenant_id}/subscriptions", response_model=list[SubscriptionRead])
async def list_subscriptions(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> list[SubscriptionRead]:
    await _get_or_404(tenant_id, session)
    subs = await TenantRepository(session).subscriptions(tenant_id)
    return [SubscriptionRead.model_validate(s) for s in subs]


@router.post(
    "/{tenant_id}/subscriptions",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_subscription(
    tenant_id: uuid.UUID,
    body: SubscriptionCreate,
    _operator: Operator,
    session: Session,
) -> SubscriptionRead:
    await _get_or_404(tenant_id, session)
    tenants = TenantRepository(session)
    if body.module in await tenants.enabled_modules(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Module '{body.module}' is already enabled",
        )
    sub = Subscription(
        tenant_id=tenant_id, module=body.module, started_at=utcnow(), ends_at=body.ends_at,
    )
    await tenants.save(sub)
    return SubscriptionRead.model_validate(sub)


# ── Deployment ────────────────────────────────────────────────

@router.post("/{tenant_id}/deployments", response_model=DeploymentResponse)
async def deploy_tenant(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
    session_factory: SessionFactory,
    provisioners: ProvisionerSet,
) -> DeploymentResponse:
    """Run the deployment inline and report its outcome."""
    await _get_or_404(tenant_id, session)
    result = await deploy_tenant_infrastructure(tenant_id, session_factory, provisioners)
    if not result.success or result.info is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=result.error,
        )
    info = result.info
    return DeploymentResponse(
        success=True,
        tenant_id=info.tenant_id,
        infrastructure_id=info.infrastructure_id,
        namespace=info.namespace,
        application_url=info.application_url,
        identity_realm=info.identity_realm,
        modules=info.modules,
        deployed_at=info.deployed_at,
    )


@router.post(
    "/{tenant_id}/deployments/async",
    response_model=DeploymentQueued,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_deployment(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> DeploymentQueued:
    """Hand the deployment to the worker. Progress shows up on the infrastructure record."""
    tenant = await _get_or_404(tenant_id, session)
    if tenant.status != TenantStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Tenant is {tenant.status}; only pending tenants can be deployed",
        )
    repo = InfrastructureRepository(session)
    current = await repo.get_current(tenant_id)
    if current is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Tenant already has infrastructure in status '{current.status}'",
        )
    # Keyed on the last failed attempt: a retry after a failure gets a fresh id,
    # a double submit of the same attempt does not.
    latest = await repo.get_latest(tenant_id)
    attempt = latest.id.hex if latest is not None else "initial"
    redis: ArqRedis = await create_pool(_redis_settings())
    try:
        job = await redis.enqueue_job(
            "deploy_tenant",
            tenant_id=str(tenant_id),
            _job_id=f"deploy:{tenant_id}:{attempt}",
        )
    finally:
        await redis.aclose()
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A deployment for this attempt is already queued or finished",
        )
    return DeploymentQueued(tenant_id=tenant_id, job_id=job.job_id)


@router.get("/{tenant_id}/infrastructure", response_model=InfrastructureRead)
async def get_infrastructure(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> InfrastructureRead:
    """Current infrastructure record, or the latest failed one."""
    await _get_or_404(tenant_id, session)
    repo = InfrastructureRepository(session)
    infra = await repo.get_current(tenant_id) or await repo.get_latest(tenant_id)
    if infra is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No infrastructure")
    return InfrastructureRead.model_validate(infra)


# ── Internal helper ───────────────────────────────────────────

async def _get_or_404(tenant_id: uuid.UUID, session) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant
