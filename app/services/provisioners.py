"""Provisioner collaborators used by the deployment orchestrator.

Each protocol exposes one provisioning call that is idempotent per call and
returns connection details or raises. ``ProvisioningAgentClient`` implements
all of them against the provisioning agent's REST API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import httpx

from app.core.config import get_settings


# ── Results ───────────────────────────────────────────────────

@dataclass
class NamespaceInfo:
    name: str


@dataclass
class RelationalDbInfo:
    connection_url: str
    database: str


@dataclass
class DocumentDbInfo:
    connection_url: str
    database: str


@dataclass
class CacheInfo:
    connection_url: str


@dataclass
class IdentityRealmInfo:
    realm: str
    client_id: str
    client_secret: str


@dataclass
class ApplicationSpec:
    """Everything injected into the tenant's application workload."""
    namespace: str
    subdomain: str
    database_url: str
    document_store_url: str
    document_database: str
    cache_url: str
    identity_realm: str
    identity_client_id: str
    identity_client_secret: str
    hostname: str
    modules: list[str] = field(default_factory=list)


@dataclass
class ApplicationInfo:
    url: str


# ── Collaborator contracts ────────────────────────────────────

class NamespaceProvisioner(Protocol):
    async def allocate(self, name: str) -> NamespaceInfo: ...

    async def teardown(self, name: str) -> None:
        """Remove the namespace and everything provisioned for it."""
        ...


class RelationalDbProvisioner(Protocol):
    async def provision_database(self, namespace: str) -> RelationalDbInfo: ...


class DocumentDbProvisioner(Protocol):
    async def provision_document_db(self, namespace: str) -> DocumentDbInfo: ...


class CacheProvisioner(Protocol):
    async def deploy_cache(self, namespace: str) -> CacheInfo: ...


class IdentityRealmProvisioner(Protocol):
    async def create_realm(self, namespace: str, subdomain: str) -> IdentityRealmInfo: ...


class ApplicationDeployer(Protocol):
    async def deploy_application(self, spec: ApplicationSpec) -> ApplicationInfo: ...


@dataclass
class Provisioners:
    """The collaborator set handed to the orchestrator."""
    namespaces: NamespaceProvisioner
    relational_db: RelationalDbProvisioner
    document_db: DocumentDbProvisioner
    cache: CacheProvisioner
    identity: IdentityRealmProvisioner
    application: ApplicationDeployer


# ── HTTP implementation ───────────────────────────────────────

class ProvisioningAgentClient:
    """Talks to the provisioning agent that owns the cluster and data servers."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"User-Agent": "StackWarden/1.0"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _post(self, path: str, payload: dict) -> dict:
        async with self._client() as client:
            resp = await client.post(path, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def allocate(self, name: str) -> NamespaceInfo:
        data = await self._post("/namespaces", {"name": name})
        return NamespaceInfo(name=data.get("name", name))

    async def teardown(self, name: str) -> None:
        async with self._client() as client:
            resp = await client.delete(f"/namespaces/{name}")
            # Already gone is fine
            if resp.status_code != 404:
                resp.raise_for_status()

    async def provision_database(self, namespace: str) -> RelationalDbInfo:
        data = await self._post("/databases/relational", {"namespace": namespace})
        return RelationalDbInfo(connection_url=data["connection_url"], database=data["database"])

    async def provision_document_db(self, namespace: str) -> DocumentDbInfo:
        data = await self._post("/databases/document", {"namespace": namespace})
        return DocumentDbInfo(connection_url=data["connection_url"], database=data["database"])

    async def deploy_cache(self, namespace: str) -> CacheInfo:
        data = await self._post("/caches", {"namespace": namespace})
        return CacheInfo(connection_url=data["connection_url"])

    async def create_realm(self, namespace: str, subdomain: str) -> IdentityRealmInfo:
        data = await self._post(
            "/identity/realms", {"namespace": namespace, "realm": subdomain},
        )
        return IdentityRealmInfo(
            realm=data["realm"],
            client_id=data["client_id"],
            client_secret=data["client_secret"],
        )

    async def deploy_application(self, spec: ApplicationSpec) -> ApplicationInfo:
        data = await self._post("/applications", {
            "namespace": spec.namespace,
            "subdomain": spec.subdomain,
            "hostname": spec.hostname,
            "modules": spec.modules,
            "env": {
                "DATABASE_URL": spec.database_url,
                "DOCUMENT_STORE_URL": spec.document_store_url,
                "DOCUMENT_DATABASE": spec.document_database,
                "CACHE_URL": spec.cache_url,
                "IDENTITY_REALM": spec.identity_realm,
                "IDENTITY_CLIENT_ID": spec.identity_client_id,
                "IDENTITY_CLIENT_SECRET": spec.identity_client_secret,
            },
        })
        return ApplicationInfo(url=data["url"])


def default_provisioners() -> Provisioners:
    """Build the production collaborator set from settings."""
    settings = get_settings()
    agent = ProvisioningAgentClient(
        settings.provisioner_api_url,
        token=settings.provisioner_api_token,
        timeout=settings.provisioner_timeout_seconds,
    )
    return Provisioners(
        namespaces=agent,
        relational_db=agent,
        document_db=agent,
        cache=agent,
        identity=agent,
        application=agent,
    )
