"""Tenant health history — read side of the health monitor."""

import json
import uuid

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import Operator, Session
from app.core import cache
from app.models.health import HealthCheckRead, HealthCheckResult, SubCheck
from app.models.tenant import Tenant
from app.services.registry import HealthRepository

router = APIRouter(prefix="/tenants/{tenant_id}/health", tags=["health"])


def _to_read(result: HealthCheckResult) -> HealthCheckRead:
    checks = json.loads(result.checks) if isinstance(result.checks, str) else result.checks
    return HealthCheckRead(
        id=result.id,
        tenant_id=result.tenant_id,
        overall_status=result.overall_status,
        checks=[SubCheck.model_validate(c) for c in checks],
        checked_at=result.checked_at,
    )


@router.get("", response_model=list[HealthCheckRead])
async def health_history(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[HealthCheckRead]:
    """Most recent health check results, newest first. Cached for 30s."""
    cache_key = ("health_history", tenant_id, limit)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    await _get_tenant_or_404(tenant_id, session)
    results = await HealthRepository(session).history(tenant_id, limit=limit)
    response = [_to_read(r) for r in results]
    cache.put(cache_key, response)
    return response


@router.get("/latest", response_model=HealthCheckRead)
async def latest_health(
    tenant_id: uuid.UUID,
    _operator: Operator,
    session: Session,
) -> HealthCheckRead:
    await _get_tenant_or_404(tenant_id, session)
    results = await HealthRepository(session).history(tenant_id, limit=1)
    if not results:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No health checks recorded yet",
        )
    return _to_read(results[0])


async def _get_tenant_or_404(tenant_id: uuid.UUID, session) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant
