"""System health endpoint — connectivity of the control plane's own backing services."""

import time
from urllib.parse import urlparse, urlunparse

from fastapi import APIRouter
from pydantic import BaseModel
from redis.asyncio import from_url
from sqlalchemy import text

from app.api.deps import Operator, Session
from app.core.config import get_settings

router = APIRouter(prefix="/system", tags=["system"])

settings = get_settings()
_start_time = time.time()


class ServiceHealth(BaseModel):
    status: str  # "ok" or "error"
    detail: str | None = None
    version: str | None = None
    latency_ms: int | None = None


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: int
    registry: ServiceHealth
    redis: ServiceHealth
    config: dict


@router.get("/health", response_model=HealthResponse)
async def system_health(_operator: Operator, session: Session) -> HealthResponse:
    """Check connectivity to the registry database and the job queue."""
    db = await _check_registry(session)
    rd = await _check_redis()

    overall = "ok" if all(s.status == "ok" for s in (db, rd)) else "degraded"
    return HealthResponse(
        status=overall,
        uptime_seconds=int(time.time() - _start_time),
        registry=db,
        redis=rd,
        config={
            "database_url": _mask_url(settings.database_url),
            "redis_url": _mask_url(settings.redis_url),
            "metrics_url": settings.metrics_url,
            "encryption_configured": bool(settings.encryption_key),
            "health_check_interval_minutes": settings.health_check_interval_minutes,
            "alert_engine_tick_seconds": settings.alert_engine_tick_seconds,
        },
    )


def _mask_url(url: str) -> str:
    """Mask credentials in database/redis URLs."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = f"{parsed.username}:***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


async def _check_registry(session) -> ServiceHealth:
    try:
        t0 = time.monotonic()
        await session.execute(text("SELECT 1"))
        latency = int((time.monotonic() - t0) * 1000)
        return ServiceHealth(status="ok", latency_ms=latency)
    except Exception as exc:
        return ServiceHealth(status="error", detail=str(exc)[:200])


async def _check_redis() -> ServiceHealth:
    try:
        t0 = time.monotonic()
        redis = from_url(settings.redis_url, decode_responses=True)
        try:
            pong = await redis.ping()
            latency = int((time.monotonic() - t0) * 1000)
            info = await redis.info("server")
        finally:
            await redis.aclose()
        version = info.get("redis_version")
        return ServiceHealth(
            status="ok" if pong else "error",
            version=f"Redis {version}" if version else None,
            latency_ms=latency,
        )
    except Exception as exc:
        return ServiceHealth(status="error", detail=str(exc)[:200])
