"""
Deployment storage: CRUD, status transitions and the per-deployment lease.

Documents live in the deployments collection with camelCase keys. Environment
variable values are Fernet-encrypted at rest and decrypted on read. Status
writes are compare-and-set against the legal predecessors of the target
status, so two writers cannot both move a deployment past the same state.
"""
import logging
import os
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from database import database
from models import (
    CreateDeploymentRequest,
    Deployment,
    DeploymentDatabase,
    DeploymentStatus,
)
from bundles.models import DatabaseProvisioning
from services.connection_vault import connection_vault
from services.deployment_secrets import RUNTIME_ONLY_KEYS
from services.deployment_state import predecessors
from utils.crypto import encrypt_secret, decrypt_secret
from utils.errors import InvalidTransitionError, NotFoundError

logger = logging.getLogger(__name__)

LOCK_DURATION_SECONDS = int(os.getenv("DEPLOYMENT_LOCK_SECONDS", "300"))  # expired lease is considered free
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _worker_id() -> str:
    return os.environ.get("DEPLOYMENT_WORKER_ID", f"{os.getpid()}-{uuid.uuid4().hex[:8]}")


def _seal(env: Dict[str, str]) -> Dict[str, str]:
    dropped = [k for k in env if k in RUNTIME_ONLY_KEYS]
    if dropped:
        logger.warning(f"Refusing to persist runtime-only env vars: {dropped}")
    return {k: encrypt_secret(v) for k, v in env.items() if k not in RUNTIME_ONLY_KEYS}


def _open(env: Dict[str, str]) -> Dict[str, str]:
    return {k: decrypt_secret(v) for k, v in (env or {}).items()}


def _to_deployment(doc: Dict[str, Any]) -> Deployment:
    doc = dict(doc)
    doc.pop("_id", None)
    doc["environmentVariables"] = _open(doc.get("environmentVariables") or {})
    return Deployment.model_validate(doc)


class DeploymentService:
    """Deployment persistence. Module-level singleton: deployment_service."""

    def _get_db(self):
        return database.get_db()

    async def _vault_manual_connection(
        self, organization_id: str, db_config: Dict[str, Any], user_id: Optional[str]
    ) -> Dict[str, Any]:
        """Move a supplied connection string into the vault; keep only its vault id."""
        db_config = dict(db_config)
        connection_string = db_config.pop("connectionString", None)
        if connection_string:
            db_config["vaultId"] = await connection_vault.store_connection_string(
                organization_id,
                connection_string,
                database=db_config.get("databaseName"),
                name="Deployment database",
                created_by=user_id,
            )
        return db_config

    async def create_deployment(self, request: CreateDeploymentRequest, user_id: Optional[str]) -> Deployment:
        db = self._get_db()

        db_config = dict(request.database or {"provisioning": DatabaseProvisioning.AUTO.value})
        db_config = await self._vault_manual_connection(request.organization_id, db_config, user_id)

        deployment = Deployment(
            project_id=request.project_id,
            organization_id=request.organization_id,
            created_by=user_id,
            target=request.target,
            app_name=request.app_name,
            environment=request.environment,
            database=DeploymentDatabase.model_validate(db_config),
            environment_variables=request.environment_variables,
            branding=request.branding,
            custom_domain=request.custom_domain,
            vercel_installation_id=request.vercel_installation_id,
            status_message="Deployment created",
        )

        doc = deployment.to_document()
        doc["environmentVariables"] = _seal(deployment.environment_variables)
        await db.deployments.insert_one(doc)
        logger.info(f"Created deployment {deployment.deployment_id} for project {deployment.project_id}")
        return deployment

    async def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        db = self._get_db()
        doc = await db.deployments.find_one(
            {"deploymentId": deployment_id, "deletedAt": None},
            {"_id": 0},
        )
        return _to_deployment(doc) if doc else None

    async def list_deployments(
        self,
        project_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        target: Optional[str] = None,
    ) -> Dict[str, Any]:
        db = self._get_db()
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        query: Dict[str, Any] = {"deletedAt": None}
        if project_id:
            query["projectId"] = project_id
        if organization_id:
            query["organizationId"] = organization_id
        if status:
            query["status"] = status
        if target:
            query["target"] = target

        total = await db.deployments.count_documents(query)
        cursor = db.deployments.find(query, {"_id": 0}).sort("createdAt", -1).skip((page - 1) * page_size).limit(page_size)
        docs = await cursor.to_list(length=page_size)

        return {
            "deployments": [_to_deployment(d) for d in docs],
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": (total + page_size - 1) // page_size,
        }

    async def update_deployment(self, deployment_id: str, patch: Dict[str, Any]) -> Optional[Deployment]:
        """Apply a camelCase field patch. Status is not writable here."""
        db = self._get_db()
        patch = {k: v for k, v in patch.items() if k != "status"}
        if "environmentVariables" in patch:
            patch["environmentVariables"] = _seal(patch["environmentVariables"] or {})
        patch["updatedAt"] = _now().isoformat()

        doc = await db.deployments.find_one_and_update(
            {"deploymentId": deployment_id, "deletedAt": None},
            {"$set": patch},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return _to_deployment(doc) if doc else None

    async def update_database_config(
        self, deployment: Deployment, db_config: Dict[str, Any], user_id: Optional[str]
    ) -> Optional[Deployment]:
        merged = deployment.database.model_dump(by_alias=True, exclude_none=True, mode="json")
        merged.update(await self._vault_manual_connection(deployment.organization_id, db_config, user_id))
        validated = DeploymentDatabase.model_validate(merged)
        return await self.update_deployment(deployment.deployment_id, {"database": validated.model_dump(by_alias=True, mode="json")})

    async def merge_environment_variables(self, deployment_id: str, values: Dict[str, str]) -> None:
        """Add or replace individual env vars without touching the others."""
        if not values:
            return
        db = self._get_db()
        sealed = _seal(values)
        update = {f"environmentVariables.{k}": v for k, v in sealed.items()}
        update["updatedAt"] = _now().isoformat()
        await db.deployments.update_one({"deploymentId": deployment_id}, {"$set": update})

    async def update_deployment_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        status_message: Optional[str] = None,
        last_error: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Deployment:
        """Move to status if the current status allows it.

        Raises NotFoundError for unknown ids and InvalidTransitionError when the
        current status (possibly changed by a concurrent writer) does not permit
        the move.
        """
        db = self._get_db()
        status = DeploymentStatus(status)
        now = _now().isoformat()
        update: Dict[str, Any] = {"$set": {"status": status.value, "updatedAt": now, **(fields or {})}}
        if status_message is not None:
            update["$set"]["statusMessage"] = status_message
        if status == DeploymentStatus.FAILED:
            update["$set"]["lastError"] = last_error or status_message or "Unknown error"
            update["$set"]["lastErrorAt"] = now
            update["$inc"] = {"errorCount": 1}

        doc = await db.deployments.find_one_and_update(
            {"deploymentId": deployment_id, "deletedAt": None, "status": {"$in": predecessors(status)}},
            update,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            logger.info(f"Deployment {deployment_id} -> {status.value}: {status_message or ''}")
            return _to_deployment(doc)

        current = await db.deployments.find_one(
            {"deploymentId": deployment_id, "deletedAt": None},
            {"_id": 0, "status": 1},
        )
        if not current:
            raise NotFoundError("Deployment not found")
        raise InvalidTransitionError(
            f"Cannot move deployment from {current.get('status')} to {status.value}"
        )

    async def delete_deployment(self, deployment_id: str) -> bool:
        db = self._get_db()
        result = await db.deployments.update_one(
            {"deploymentId": deployment_id, "deletedAt": None},
            {"$set": {"deletedAt": _now().isoformat(), "updatedAt": _now().isoformat()}},
        )
        return result.modified_count > 0

    async def get_deploying_deployments(self, limit: int = 50) -> list:
        db = self._get_db()
        cursor = db.deployments.find(
            {"status": DeploymentStatus.DEPLOYING.value, "deletedAt": None, "vercelProjectId": {"$ne": None}},
            {"_id": 0},
        ).limit(limit)
        return [_to_deployment(d) for d in await cursor.to_list(length=limit)]

    async def get_active_deployments(self, limit: int = 50) -> list:
        db = self._get_db()
        cursor = db.deployments.find(
            {"status": DeploymentStatus.ACTIVE.value, "deletedAt": None, "deployedUrl": {"$ne": None}},
            {"_id": 0},
        ).limit(limit)
        return [_to_deployment(d) for d in await cursor.to_list(length=limit)]

    async def acquire_lock(self, deployment_id: str, owner: Optional[str] = None) -> Optional[str]:
        """Atomically take the deployment lease. Returns the owner id, or None if held."""
        db = self._get_db()
        now = _now()
        owner = owner or _worker_id()
        result = await db.deployments.find_one_and_update(
            {
                "deploymentId": deployment_id,
                "$or": [
                    {"lockedUntil": None},
                    {"lockedUntil": {"$exists": False}},
                    {"lockedUntil": {"$lt": now}},
                ],
            },
            {"$set": {"lockedUntil": now + timedelta(seconds=LOCK_DURATION_SECONDS), "lockOwner": owner}},
            projection={"_id": 0, "deploymentId": 1},
            return_document=ReturnDocument.AFTER,
        )
        return owner if result is not None else None

    async def release_lock(self, deployment_id: str, owner: str) -> None:
        """Clear the lease if we still own it."""
        db = self._get_db()
        await db.deployments.update_one(
            {"deploymentId": deployment_id, "lockOwner": owner},
            {"$unset": {"lockedUntil": "", "lockOwner": ""}},
        )


deployment_service = DeploymentService()
