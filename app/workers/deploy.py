"""Deployment worker task — runs DeployTenantInfrastructure off the request path."""

from __future__ import annotations

import logging
import uuid

from app.services.orchestrator import deploy_tenant_infrastructure

logger = logging.getLogger(__name__)


async def deploy_tenant(ctx: dict, tenant_id: str) -> dict:
    """ARQ task: provision a pending tenant's stack.

    Args:
        ctx: ARQ worker context. ``session_factory`` and ``provisioners`` are
            placed there by the worker's startup hook (tests inject their own).
        tenant_id: UUID of the tenant to deploy.

    Returns:
        dict with ``success`` plus either the deployment info or the error.
    """
    result = await deploy_tenant_infrastructure(
        uuid.UUID(tenant_id),
        ctx["session_factory"],
        ctx["provisioners"],
    )
    if not result.success or result.info is None:
        logger.warning("Deployment of tenant %s failed: %s", tenant_id, result.error)
        return {"success": False, "error": result.error}

    info = result.info
    return {
        "success": True,
        "infrastructure_id": str(info.infrastructure_id),
        "namespace": info.namespace,
        "application_url": info.application_url,
        "modules": info.modules,
    }
