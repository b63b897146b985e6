"""V1 API router aggregation."""

from fastapi import APIRouter

from app.api.v1.alerts import router as alerts_router
from app.api.v1.health import router as health_router
from app.api.v1.system import router as system_router
from app.api.v1.tenants import router as tenants_router
from app.api.v1.webhooks import router as webhooks_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(tenants_router)
v1_router.include_router(health_router)
v1_router.include_router(alerts_router)
v1_router.include_router(webhooks_router)
v1_router.include_router(system_router)
