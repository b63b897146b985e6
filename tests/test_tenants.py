"""Tenant registry and deployment endpoint tests."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from app.core.security import create_jwt


async def _create(client: AsyncClient, headers: dict, subdomain: str, modules=("fleet",)) -> dict:
    resp = await client.post("/v1/tenants", json={
        "name": f"{subdomain.title()} Ltd",
        "subdomain": subdomain,
        "modules": list(modules),
    }, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_requires_operator_token(client: AsyncClient):
    resp = await client.get("/v1/tenants")
    assert resp.status_code in (401, 403)

    resp = await client.get("/v1/tenants", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_create_tenant(client: AsyncClient, operator_headers):
    data = await _create(client, operator_headers, "acme", modules=("fleet", "billing"))
    assert data["subdomain"] == "acme"
    assert data["status"] == "pending"
    assert data["activated_at"] is None

    resp = await client.get(f"/v1/tenants/{data['id']}/subscriptions", headers=operator_headers)
    assert resp.status_code == 200
    assert sorted(s["module"] for s in resp.json()) == ["billing", "fleet"]


@pytest.mark.asyncio
async def test_duplicate_subdomain(client: AsyncClient, operator_headers):
    await _create(client, operator_headers, "dupe")
    resp = await client.post("/v1/tenants", json={
        "name": "Other", "subdomain": "dupe",
    }, headers=operator_headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
@pytest.mark.parametrize("subdomain", ["Acme", "-acme", "acme-", "ac_me", ""])
async def test_invalid_subdomain(client: AsyncClient, operator_headers, subdomain):
    resp = await client.post("/v1/tenants", json={
        "name": "Bad", "subdomain": subdomain,
    }, headers=operator_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_and_get(client: AsyncClient, operator_headers):
    created = await _create(client, operator_headers, "listed")

    resp = await client.get("/v1/tenants", headers=operator_headers)
    assert resp.status_code == 200
    assert created["id"] in [t["id"] for t in resp.json()]

    resp = await client.get(
        "/v1/tenants", params={"tenant_status": "active"}, headers=operator_headers,
    )
    assert resp.json() == []

    resp = await client.get(f"/v1/tenants/{created['id']}", headers=operator_headers)
    assert resp.json()["subdomain"] == "listed"

    resp = await client.get(
        "/v1/tenants/00000000-0000-0000-0000-000000000000", headers=operator_headers,
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_add_subscription(client: AsyncClient, operator_headers):
    tenant = await _create(client, operator_headers, "growing", modules=("fleet",))

    resp = await client.post(
        f"/v1/tenants/{tenant['id']}/subscriptions",
        json={"module": "garage"},
        headers=operator_headers,
    )
    assert resp.status_code == 201
    assert resp.json()["module"] == "garage"

    resp = await client.post(
        f"/v1/tenants/{tenant['id']}/subscriptions",
        json={"module": "fleet"},
        headers=operator_headers,
    )
    assert resp.status_code == 409


# ── Deployment ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deploy_inline(client: AsyncClient, operator_headers, agent):
    tenant = await _create(client, operator_headers, "shiny", modules=("fleet", "workforce"))

    resp = await client.post(f"/v1/tenants/{tenant['id']}/deployments", headers=operator_headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["success"] is True
    assert data["namespace"] == "tenant-shiny"
    assert data["application_url"] == "https://shiny.apps.test"
    assert data["modules"] == ["fleet", "workforce"]
    assert agent.calls[0] == "namespace"

    resp = await client.get(f"/v1/tenants/{tenant['id']}/infrastructure", headers=operator_headers)
    assert resp.status_code == 200
    infra = resp.json()
    assert infra["status"] == "deployed"
    # Secrets are never exposed
    assert "database_url" not in infra
    assert "identity_client_secret" not in infra

    resp = await client.get(f"/v1/tenants/{tenant['id']}", headers=operator_headers)
    assert resp.json()["status"] == "active"

    # A second deployment is rejected
    resp = await client.post(f"/v1/tenants/{tenant['id']}/deployments", headers=operator_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_deploy_inline_failure(client: AsyncClient, operator_headers, agent):
    agent.fail_at = "relational_db"
    tenant = await _create(client, operator_headers, "doomed")

    resp = await client.post(f"/v1/tenants/{tenant['id']}/deployments", headers=operator_headers)
    assert resp.status_code == 422
    assert "relational_db" in resp.json()["detail"]
    assert agent.teardowns == ["tenant-doomed"]

    resp = await client.get(f"/v1/tenants/{tenant['id']}/infrastructure", headers=operator_headers)
    assert resp.json()["status"] == "failed"
    assert "relational_db" in resp.json()["error_message"]


@pytest.mark.asyncio
async def test_infrastructure_404_before_deploy(client: AsyncClient, operator_headers):
    tenant = await _create(client, operator_headers, "fresh")
    resp = await client.get(f"/v1/tenants/{tenant['id']}/infrastructure", headers=operator_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_deploy_async_enqueues_job(client: AsyncClient, operator_headers):
    tenant = await _create(client, operator_headers, "queued")

    mock_job = AsyncMock()
    mock_job.job_id = f"deploy:{tenant['id']}:initial"
    mock_redis = AsyncMock()
    mock_redis.enqueue_job = AsyncMock(return_value=mock_job)

    with patch("app.api.v1.tenants.create_pool", AsyncMock(return_value=mock_redis)):
        resp = await client.post(
            f"/v1/tenants/{tenant['id']}/deployments/async", headers=operator_headers,
        )

    assert resp.status_code == 202
    assert resp.json()["job_id"] == f"deploy:{tenant['id']}:initial"
    mock_redis.enqueue_job.assert_awaited_once()
    args = mock_redis.enqueue_job.call_args
    assert args.args[0] == "deploy_tenant"
    assert args.kwargs["tenant_id"] == tenant["id"]
    assert args.kwargs["_job_id"] == f"deploy:{tenant['id']}:initial"
    mock_redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_async_retry_after_failure_gets_new_job_id(
    client: AsyncClient, operator_headers, agent,
):
    agent.fail_at = "cache"
    tenant = await _create(client, operator_headers, "retried")
    resp = await client.post(f"/v1/tenants/{tenant['id']}/deployments", headers=operator_headers)
    assert resp.status_code == 422
    failed = await client.get(f"/v1/tenants/{tenant['id']}/infrastructure", headers=operator_headers)

    mock_redis = AsyncMock()
    mock_redis.enqueue_job = AsyncMock(side_effect=lambda *a, **kw: AsyncMock(job_id=kw["_job_id"]))
    with patch("app.api.v1.tenants.create_pool", AsyncMock(return_value=mock_redis)):
        resp = await client.post(
            f"/v1/tenants/{tenant['id']}/deployments/async", headers=operator_headers,
        )

    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    assert job_id == f"deploy:{tenant['id']}:{uuid.UUID(failed.json()['id']).hex}"


@pytest.mark.asyncio
async def test_async_deploy_conflicts_when_job_already_exists(client: AsyncClient, operator_headers):
    tenant = await _create(client, operator_headers, "twice")

    mock_redis = AsyncMock()
    # ARQ returns None when a job with the same id is queued or its result is kept
    mock_redis.enqueue_job = AsyncMock(return_value=None)
    with patch("app.api.v1.tenants.create_pool", AsyncMock(return_value=mock_redis)):
        resp = await client.post(
            f"/v1/tenants/{tenant['id']}/deployments/async", headers=operator_headers,
        )

    assert resp.status_code == 409
    mock_redis.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_async_deploy_rejected_while_infrastructure_exists(
    client: AsyncClient, operator_headers,
):
    tenant = await _create(client, operator_headers, "already")
    resp = await client.post(f"/v1/tenants/{tenant['id']}/deployments", headers=operator_headers)
    assert resp.status_code == 200

    with patch("app.api.v1.tenants.create_pool", AsyncMock()) as pool:
        resp = await client.post(
            f"/v1/tenants/{tenant['id']}/deployments/async", headers=operator_headers,
        )
    assert resp.status_code == 409
    pool.assert_not_awaited()


# ── Lifecycle ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_suspend_reinstate_cancel(client: AsyncClient, operator_headers):
    tenant = await _create(client, operator_headers, "cycle")
    tid = tenant["id"]

    # Pending tenants cannot be suspended
    resp = await client.post(f"/v1/tenants/{tid}/suspend", headers=operator_headers)
    assert resp.status_code == 409

    resp = await client.post(f"/v1/tenants/{tid}/deployments", headers=operator_headers)
    assert resp.status_code == 200

    resp = await client.post(f"/v1/tenants/{tid}/suspend", headers=operator_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "suspended"
    assert resp.json()["suspended_at"] is not None

    resp = await client.post(f"/v1/tenants/{tid}/reinstate", headers=operator_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"

    resp = await client.post(f"/v1/tenants/{tid}/reinstate", headers=operator_headers)
    assert resp.status_code == 409

    resp = await client.post(f"/v1/tenants/{tid}/cancel", headers=operator_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    # Cancelled is terminal
    resp = await client.post(f"/v1/tenants/{tid}/suspend", headers=operator_headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_lifecycle_publishes_webhook(client: AsyncClient, operator_headers):
    tenant = await _create(client, operator_headers, "observed")

    with patch("app.api.v1.tenants.publish_events", AsyncMock()) as publish:
        resp = await client.post(f"/v1/tenants/{tenant['id']}/cancel", headers=operator_headers)

    assert resp.status_code == 200
    events = publish.call_args.args[1]
    assert [e.event_type for e in events] == ["tenant.cancelled"]


@pytest.mark.asyncio
async def test_token_without_operator_scope_rejected(client: AsyncClient):
    from jose import jwt

    from app.core.config import get_settings

    settings = get_settings()
    token = jwt.encode({"sub": "someone"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    resp = await client.get("/v1/tenants", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401

    resp = await client.get(
        "/v1/tenants", headers={"Authorization": f"Bearer {create_jwt('ops')}"},
    )
    assert resp.status_code == 200
