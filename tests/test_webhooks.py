"""Webhook CRUD and domain event dispatch tests."""

import hashlib
import hmac
import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from app.models.webhook import Webhook
from app.services.events import DomainEvent, publish_events
from app.services.webhook_dispatch import dispatch_webhook_event


def _mock_http_client(post: AsyncMock) -> AsyncMock:
    mock_client_instance = AsyncMock()
    mock_client_instance.post = post
    mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
    mock_client_instance.__aexit__ = AsyncMock(return_value=False)
    return mock_client_instance


@pytest.mark.asyncio
async def test_create_webhook(client: AsyncClient, operator_headers):
    resp = await client.post("/v1/webhooks", json={
        "url": "https://dash.example.com/hook",
        "events": ["tenant.activated", "alert.triggered"],
        "description": "Ops dashboard",
        "secret": "my-custom-secret",
    }, headers=operator_headers)
    assert resp.status_code == 201
    data = resp.json()
    assert data["tenant_id"] is None
    assert data["events"] == ["tenant.activated", "alert.triggered"]
    assert data["secret"] == "my-custom-secret"  # noqa: S105
    assert data["has_secret"] is True


@pytest.mark.asyncio
async def test_create_webhook_auto_secret(client: AsyncClient, operator_headers):
    resp = await client.post("/v1/webhooks", json={
        "url": "https://dash.example.com/hook",
        "events": ["health_check.recorded"],
    }, headers=operator_headers)
    assert resp.status_code == 201
    assert len(resp.json()["secret"]) > 20


@pytest.mark.asyncio
async def test_webhook_invalid_events(client: AsyncClient, operator_headers):
    resp = await client.post("/v1/webhooks", json={
        "url": "https://dash.example.com/hook",
        "events": ["source.ingested"],
    }, headers=operator_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_webhook_for_unknown_tenant(client: AsyncClient, operator_headers):
    resp = await client.post("/v1/webhooks", json={
        "tenant_id": str(uuid.uuid4()),
        "url": "https://dash.example.com/hook",
        "events": ["tenant.activated"],
    }, headers=operator_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_get_delete(client: AsyncClient, operator_headers, make_tenant):
    tenant = await make_tenant("hooked")
    await client.post("/v1/webhooks", json={
        "url": "https://a.example.com/hook", "events": ["alert.triggered"],
    }, headers=operator_headers)
    resp = await client.post("/v1/webhooks", json={
        "tenant_id": str(tenant.id),
        "url": "https://b.example.com/hook",
        "events": ["tenant.suspended"],
    }, headers=operator_headers)
    wh_id = resp.json()["id"]

    resp = await client.get("/v1/webhooks", headers=operator_headers)
    assert len(resp.json()) == 2
    for wh in resp.json():
        assert "secret" not in wh

    resp = await client.get(
        "/v1/webhooks", params={"tenant_id": str(tenant.id)}, headers=operator_headers,
    )
    assert [w["id"] for w in resp.json()] == [wh_id]

    resp = await client.get(f"/v1/webhooks/{wh_id}", headers=operator_headers)
    assert resp.json()["url"] == "https://b.example.com/hook"

    resp = await client.delete(f"/v1/webhooks/{wh_id}", headers=operator_headers)
    assert resp.status_code == 204
    resp = await client.get(f"/v1/webhooks/{wh_id}", headers=operator_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_webhook_dispatch_signs_payload(session, make_tenant):
    tenant = await make_tenant("signed")
    secret = "test-secret-123"  # noqa: S105
    session.add(Webhook(
        tenant_id=tenant.id,
        url="https://example.com/dispatch-test",
        secret=secret,
        events=json.dumps(["tenant.activated"]),
    ))
    await session.commit()

    payload = {"subdomain": "signed"}
    mock_client_instance = _mock_http_client(AsyncMock(return_value=AsyncMock(is_success=True)))

    with patch("app.services.webhook_dispatch.httpx.AsyncClient", return_value=mock_client_instance):
        await dispatch_webhook_event(session, tenant.id, "tenant.activated", payload)

    mock_client_instance.post.assert_called_once()
    call_kwargs = mock_client_instance.post.call_args
    body = json.dumps(payload, default=str)
    expected_sig = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    assert call_kwargs.kwargs["headers"]["X-StackWarden-Signature"] == expected_sig
    assert call_kwargs.kwargs["headers"]["X-StackWarden-Event"] == "tenant.activated"


@pytest.mark.asyncio
async def test_dispatch_scoping(session, make_tenant):
    """Platform subscribers see every tenant; tenant subscribers only their own."""
    mine = await make_tenant("mine")
    other = await make_tenant("other")
    session.add_all([
        Webhook(url="https://platform.test/hook", secret="s",  # noqa: S106
                events=json.dumps(["alert.triggered"])),
        Webhook(tenant_id=mine.id, url="https://mine.test/hook", secret="s",  # noqa: S106
                events=json.dumps(["alert.triggered"])),
        Webhook(tenant_id=mine.id, url="https://mine.test/other-event", secret="s",  # noqa: S106
                events=json.dumps(["tenant.cancelled"])),
    ])
    await session.commit()

    post = AsyncMock()
    with patch("app.services.webhook_dispatch.httpx.AsyncClient", return_value=_mock_http_client(post)):
        await publish_events(session, [DomainEvent("alert.triggered", other.id, {"x": 1})])
    assert [c.args[0] for c in post.call_args_list] == ["https://platform.test/hook"]

    post = AsyncMock()
    with patch("app.services.webhook_dispatch.httpx.AsyncClient", return_value=_mock_http_client(post)):
        await publish_events(session, [DomainEvent("alert.triggered", mine.id, {"x": 1})])
    assert sorted(c.args[0] for c in post.call_args_list) == [
        "https://mine.test/hook", "https://platform.test/hook",
    ]


@pytest.mark.asyncio
async def test_webhook_dispatch_failure_no_propagation(session):
    session.add(Webhook(
        url="https://example.com/fail",
        secret="secret",  # noqa: S106
        events=json.dumps(["deployment.failed"]),
    ))
    await session.commit()

    post = AsyncMock(side_effect=Exception("Connection refused"))
    with patch("app.services.webhook_dispatch.httpx.AsyncClient", return_value=_mock_http_client(post)):
        # Should not raise
        await dispatch_webhook_event(session, None, "deployment.failed", {"error": "boom"})
    post.assert_called_once()


@pytest.mark.asyncio
async def test_webhook_test_ping(client: AsyncClient, operator_headers):
    resp = await client.post("/v1/webhooks", json={
        "url": "https://example.com/ping-target",
        "events": ["alert.resolved"],
        "secret": "ping-secret",
    }, headers=operator_headers)
    wh_id = resp.json()["id"]

    mock_response = AsyncMock()
    mock_response.is_success = True
    mock_response.status_code = 200
    mock_client_instance = _mock_http_client(AsyncMock(return_value=mock_response))

    with patch("app.api.v1.webhooks.httpx.AsyncClient", return_value=mock_client_instance):
        resp = await client.post(f"/v1/webhooks/{wh_id}/test", headers=operator_headers)

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "status_code": 200}
    sent_body = json.loads(mock_client_instance.post.call_args.kwargs["content"])
    assert sent_body == {"event": "test.ping", "webhook_id": wh_id}
