"""
MongoDB Atlas free-tier (M0) cluster provisioning.

One cluster per organization, tracked in provisioned_clusters. Every step is
check-then-create: an existing Atlas project, cluster or tracking record is
reused, so re-running after a partial failure converges.

Flow: Atlas project -> M0 cluster -> wait for IDLE -> database user ->
network access -> connection string stored in the connection vault.
"""
import asyncio
import logging
import os
import secrets
import string
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from urllib.parse import quote_plus

import httpx

from database import database
from services.collaborators import DatabaseProvisioner, ProvisionResult
from services.connection_vault import connection_vault

logger = logging.getLogger(__name__)

ATLAS_API_BASE = os.getenv("ATLAS_API_BASE", "https://cloud.mongodb.com/api/atlas/v2")
ATLAS_ACCEPT = "application/vnd.atlas.2023-02-01+json"
DEFAULT_PROVIDER = "AWS"
DEFAULT_REGION = "US_EAST_1"
DEFAULT_DATABASE = "forms"
CLUSTER_READY_TIMEOUT_SECONDS = 120
CLUSTER_POLL_INTERVAL_SECONDS = 5


class AtlasApiError(Exception):
    pass


def generate_project_name(organization_id: str) -> str:
    return f"netpad-{organization_id[-8:]}"


def generate_cluster_name(organization_id: str) -> str:
    return f"forms-{organization_id[-6:]}"


def generate_db_username(organization_id: str) -> str:
    return f"netpad-{organization_id[-8:]}"


def generate_secure_password(length: int = 24) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def build_connection_string(srv_host: str, username: str, password: str, database_name: str) -> str:
    host = srv_host.replace("mongodb+srv://", "")
    return (
        f"mongodb+srv://{quote_plus(username)}:{quote_plus(password)}@{host}/{database_name}"
        "?retryWrites=true&w=majority"
    )


class AtlasProvisioningService(DatabaseProvisioner):

    def __init__(self):
        self.public_key = os.getenv("ATLAS_PUBLIC_KEY", "")
        self.private_key = os.getenv("ATLAS_PRIVATE_KEY", "")
        self.atlas_org_id = os.getenv("ATLAS_ORG_ID", "")

    def is_configured(self) -> bool:
        return bool(self.public_key and self.private_key and self.atlas_org_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=ATLAS_API_BASE,
            auth=httpx.DigestAuth(self.public_key, self.private_key),
            headers={"Accept": ATLAS_ACCEPT, "Content-Type": "application/json"},
            timeout=30.0,
        )

    @staticmethod
    def _check(response: httpx.Response, what: str) -> Dict[str, Any]:
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = None
            raise AtlasApiError(f"{what} failed: {detail or response.status_code}")
        return response.json() if response.content else {}

    async def _update_record(self, cluster_id: str, status: str, **fields) -> None:
        db = database.get_db()
        await db.provisioned_clusters.update_one(
            {"clusterId": cluster_id},
            {"$set": {"status": status, "updatedAt": datetime.now(timezone.utc).isoformat(), **fields}},
        )

    async def _ensure_project(self, client: httpx.AsyncClient, name: str) -> str:
        response = await client.get(f"/orgs/{self.atlas_org_id}/groups")
        for project in self._check(response, "List Atlas projects").get("results", []):
            if project.get("name") == name:
                logger.info(f"Atlas: reusing project {name}")
                return project["id"]
        response = await client.post("/groups", json={"name": name, "orgId": self.atlas_org_id})
        project = self._check(response, "Create Atlas project")
        return project.get("id") or project["groupId"]

    async def _wait_for_cluster(self, client: httpx.AsyncClient, project_id: str, name: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + CLUSTER_READY_TIMEOUT_SECONDS
        while loop.time() < deadline:
            response = await client.get(f"/groups/{project_id}/clusters/{name}")
            cluster = self._check(response, "Get Atlas cluster")
            state = cluster.get("stateName")
            if state == "IDLE":
                return cluster
            if state == "DELETED":
                raise AtlasApiError("Cluster was deleted")
            await asyncio.sleep(CLUSTER_POLL_INTERVAL_SECONDS)
        raise AtlasApiError(f"Cluster did not become ready within {CLUSTER_READY_TIMEOUT_SECONDS}s")

    async def _ensure_cluster(self, client: httpx.AsyncClient, project_id: str, name: str) -> Dict[str, Any]:
        response = await client.get(f"/groups/{project_id}/clusters")
        existing = self._check(response, "List Atlas clusters").get("results", [])
        # Atlas allows one M0 per project
        if existing:
            cluster = existing[0]
            logger.info(f"Atlas: reusing cluster {cluster.get('name')}")
        else:
            response = await client.post(f"/groups/{project_id}/clusters", json={
                "name": name,
                "providerSettings": {
                    "providerName": "TENANT",
                    "backingProviderName": DEFAULT_PROVIDER,
                    "regionName": DEFAULT_REGION,
                    "instanceSizeName": "M0",
                },
            })
            cluster = self._check(response, "Create M0 cluster")
        if cluster.get("stateName") != "IDLE":
            cluster = await self._wait_for_cluster(client, project_id, cluster.get("name", name))
        return cluster

    async def _ensure_user(self, client: httpx.AsyncClient, project_id: str, username: str, password: str) -> None:
        body = {
            "username": username,
            "password": password,
            "databaseName": "admin",
            "roles": [{"roleName": "readWriteAnyDatabase", "databaseName": "admin"}],
        }
        response = await client.post(f"/groups/{project_id}/databaseUsers", json=body)
        if response.status_code == 409:
            # Existing user: rotate the password so the new connection string works
            response = await client.patch(
                f"/groups/{project_id}/databaseUsers/admin/{username}",
                json={"password": password},
            )
        self._check(response, "Create database user")

    async def provision_cluster(self, organization_id: str, project_id: str, user_id: Optional[str]) -> ProvisionResult:
        if not self.is_configured():
            return ProvisionResult(
                success=False,
                error="Atlas API not configured. Set ATLAS_PUBLIC_KEY, ATLAS_PRIVATE_KEY and ATLAS_ORG_ID.",
            )

        db = database.get_db()
        existing = await db.provisioned_clusters.find_one({"organizationId": organization_id}, {"_id": 0})
        if existing and existing.get("status") == "ready" and existing.get("vaultId"):
            logger.info(f"Atlas: org {organization_id} already has cluster {existing['clusterId']}")
            return ProvisionResult(success=True, cluster_id=existing["clusterId"], vault_id=existing["vaultId"])

        if existing:
            cluster_id = existing["clusterId"]
        else:
            cluster_id = f"cluster_{uuid.uuid4().hex[:16]}"
            await db.provisioned_clusters.insert_one({
                "clusterId": cluster_id,
                "organizationId": organization_id,
                "projectId": project_id,
                "atlasProjectName": generate_project_name(organization_id),
                "atlasClusterName": generate_cluster_name(organization_id),
                "instanceSize": "M0",
                "provider": DEFAULT_PROVIDER,
                "region": DEFAULT_REGION,
                "status": "pending",
                "createdBy": user_id,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            })

        try:
            async with self._client() as client:
                await self._update_record(cluster_id, "creating_project")
                atlas_project_id = await self._ensure_project(client, generate_project_name(organization_id))

                await self._update_record(cluster_id, "creating_cluster", atlasProjectId=atlas_project_id)
                cluster = await self._ensure_cluster(client, atlas_project_id, generate_cluster_name(organization_id))
                srv = (cluster.get("connectionStrings") or {}).get("standardSrv")
                if not srv:
                    raise AtlasApiError("Cluster ready but no connection string available")

                await self._update_record(cluster_id, "creating_user", atlasClusterName=cluster.get("name"))
                username = generate_db_username(organization_id)
                password = generate_secure_password()
                await self._ensure_user(client, atlas_project_id, username, password)

                await self._update_record(cluster_id, "configuring_network")
                response = await client.post(
                    f"/groups/{atlas_project_id}/accessList",
                    json=[{"cidrBlock": "0.0.0.0/0", "comment": "Hosted deployment access"}],
                )
                self._check(response, "Configure network access")

            connection_string = build_connection_string(srv, username, password, DEFAULT_DATABASE)
            vault_id = await connection_vault.store_connection_string(
                organization_id,
                connection_string,
                database=DEFAULT_DATABASE,
                name="Provisioned Atlas cluster",
                created_by=user_id,
            )
            await self._update_record(cluster_id, "ready", vaultId=vault_id, databaseName=DEFAULT_DATABASE)
            logger.info(f"Atlas: cluster {cluster_id} ready for org {organization_id}")
            return ProvisionResult(success=True, cluster_id=cluster_id, vault_id=vault_id)

        except (AtlasApiError, httpx.HTTPError) as e:
            logger.error(f"Atlas: provisioning failed for org {organization_id}: {e}")
            await self._update_record(cluster_id, "failed", error=str(e))
            return ProvisionResult(success=False, cluster_id=cluster_id, error=str(e))


atlas_provisioning_service = AtlasProvisioningService()
