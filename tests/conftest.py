"""Shared test fixtures — async SQLite file DB, fake provisioners and test client."""

import asyncio
import os
from collections.abc import AsyncGenerator

from cryptography.fernet import Fernet

# Settings are read at import time, so these must be in place before `app` loads.
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import app.models  # noqa: E402, F401
from app.api.deps import get_provisioners  # noqa: E402
from app.core import cache  # noqa: E402
from app.core.database import get_session, get_session_factory  # noqa: E402
from app.core.security import create_jwt  # noqa: E402
from app.main import app  # noqa: E402
from app.models.tenant import ModuleType, Subscription, Tenant, TenantStatus  # noqa: E402
from app.services.provisioners import (  # noqa: E402
    ApplicationInfo,
    ApplicationSpec,
    CacheInfo,
    DocumentDbInfo,
    IdentityRealmInfo,
    NamespaceInfo,
    Provisioners,
    RelationalDbInfo,
)


class FakeAgent:
    """In-memory stand-in for every provisioner. Records calls in order.

    ``fail_at`` names a step that raises, ``hang_at`` a step that never returns.
    """

    def __init__(self, fail_at: str | None = None, hang_at: str | None = None,
                 teardown_error: Exception | None = None) -> None:
        self.fail_at = fail_at
        self.hang_at = hang_at
        self.teardown_error = teardown_error
        self.calls: list[str] = []
        self.teardowns: list[str] = []
        self.app_specs: list[ApplicationSpec] = []

    async def _enter(self, step: str) -> None:
        self.calls.append(step)
        if step == self.hang_at:
            await asyncio.Event().wait()
        if step == self.fail_at:
            raise RuntimeError(f"{step} exploded")

    async def allocate(self, name: str) -> NamespaceInfo:
        await self._enter("namespace")
        return NamespaceInfo(name=name)

    async def teardown(self, name: str) -> None:
        self.teardowns.append(name)
        if self.teardown_error is not None:
            raise self.teardown_error

    async def provision_database(self, namespace: str) -> RelationalDbInfo:
        await self._enter("relational_db")
        return RelationalDbInfo(
            connection_url=f"postgresql://app:s3cret@pg:5432/{namespace}", database=namespace,
        )

    async def provision_document_db(self, namespace: str) -> DocumentDbInfo:
        await self._enter("document_db")
        return DocumentDbInfo(connection_url="mongodb://mongo:27017", database=namespace)

    async def deploy_cache(self, namespace: str) -> CacheInfo:
        await self._enter("cache")
        return CacheInfo(connection_url=f"redis://redis.{namespace}:6379/0")

    async def create_realm(self, namespace: str, subdomain: str) -> IdentityRealmInfo:
        await self._enter("identity")
        return IdentityRealmInfo(realm=subdomain, client_id=f"{subdomain}-app", client_secret="realm-secret")

    async def deploy_application(self, spec: ApplicationSpec) -> ApplicationInfo:
        await self._enter("application")
        self.app_specs.append(spec)
        return ApplicationInfo(url=f"https://{spec.subdomain}.apps.test")

    def provisioners(self) -> Provisioners:
        return Provisioners(
            namespaces=self,
            relational_db=self,
            document_db=self,
            cache=self,
            identity=self,
            application=self,
        )


@pytest.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions get their own connections
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
def make_agent():
    """Factory for FakeAgent instances configured per test."""
    return FakeAgent


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
async def client(test_session_factory, agent) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session and provisioner overrides."""

    # Fresh session per request so commits made by other sessions are visible
    async def _override_session():
        async with test_session_factory() as sess:
            yield sess

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    app.dependency_overrides[get_provisioners] = lambda: agent.provisioners()
    cache.clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    cache.clear()


@pytest.fixture
def operator_headers() -> dict:
    return {"Authorization": f"Bearer {create_jwt('ops@example.com')}"}


@pytest.fixture
def make_tenant(test_session_factory):
    """Insert a tenant (plus subscriptions) directly into the registry."""

    async def _make(
        subdomain: str, status: str = "pending", modules: tuple[str, ...] = ("fleet",),
    ) -> Tenant:
        async with test_session_factory() as sess:
            tenant = Tenant(
                name=subdomain.title(), subdomain=subdomain, status=TenantStatus(status),
            )
            sess.add(tenant)
            await sess.flush()
            for module in modules:
                sess.add(Subscription(tenant_id=tenant.id, module=ModuleType(module)))
            await sess.commit()
            await sess.refresh(tenant)
            return tenant

    return _make
