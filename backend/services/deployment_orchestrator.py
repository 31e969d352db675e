"""
Deployment orchestrator: runs one deploy attempt for a deployment.

Step order: configuring -> provisioning (auto only) -> environment assembly ->
deploying (hosting project, env vars) -> deploying "in progress". The hosting
platform finishes the build asynchronously; deployment_status_tracker moves the
record to active or failed afterwards.

Each run holds the deployment lease (lockedUntil + lockOwner) so two runs cannot
interleave. Every step is resumable: cluster, vault entry, hosting project and
generated secrets are persisted as soon as they exist and reused on the next
run. Every external call has a deadline; any failure moves the deployment to
failed with lastError set before the error is raised to the caller.
"""
import asyncio
import logging
import os
import re
from typing import Optional, Dict, Any, Awaitable, TypeVar

from bundles.models import DatabaseProvisioning
from models import AuditAction, Deployment, DeploymentStatus
from services.collaborators import (
    ConnectionVaultBase,
    DatabaseProvisioner,
    DecryptedConnection,
    HostingPlatform,
    HostingResult,
    ProvisionResult,
)
from services.deployment_secrets import assemble_environment, fill_missing_secrets
from services.deployment_state import DEPLOYABLE_STATUSES
from utils.audit import create_audit_log
from utils.errors import (
    CollaboratorError,
    ConcurrentModificationError,
    DeploymentError,
    NotFoundError,
    PreconditionError,
)

logger = logging.getLogger(__name__)

COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "180"))
HOSTING_FRAMEWORK = "nextjs"
NO_CONNECTION_ERROR = "No database connection string available"
NO_INSTALLATION_ERROR = "Vercel integration not configured for this deployment"

T = TypeVar("T")


def normalize_app_name(app_name: str) -> str:
    """Hosting project name: lowercase, anything outside [a-z0-9-] becomes '-'."""
    return re.sub(r"[^a-z0-9-]", "-", app_name.lower())


def predicted_url(app_name: str) -> str:
    return f"https://{normalize_app_name(app_name)}.vercel.app"


class DeploymentOrchestrator:

    def __init__(
        self,
        store=None,
        provisioner: Optional[DatabaseProvisioner] = None,
        vault: Optional[ConnectionVaultBase] = None,
        hosting: Optional[HostingPlatform] = None,
        timeout: float = COLLABORATOR_TIMEOUT_SECONDS,
    ):
        if store is None:
            from services.deployment_service import deployment_service as store
        if provisioner is None:
            from services.atlas_provisioning import atlas_provisioning_service as provisioner
        if vault is None:
            from services.connection_vault import connection_vault as vault
        if hosting is None:
            from services.vercel_client import vercel_client as hosting
        self.store = store
        self.provisioner = provisioner
        self.vault = vault
        self.hosting = hosting
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T], step: str) -> T:
        """Await a collaborator call under the deadline; any failure is a CollaboratorError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"{step} timed out after {self.timeout:g}s")
            raise CollaboratorError(f"{step} timed out after {self.timeout:g}s")
        except Exception as e:
            logger.exception(f"{step} raised: {e}")
            raise CollaboratorError(str(e) or type(e).__name__)

    async def _advance(self, deployment_id: str, status: DeploymentStatus, message: str) -> Deployment:
        return await self.store.update_deployment_status(deployment_id, status, status_message=message)

    async def _fail(self, deployment: Deployment, message: str, last_error: str, user_id: Optional[str]) -> None:
        """Record failure. A failing status write is logged and never masks the original error."""
        try:
            await self.store.update_deployment_status(
                deployment.deployment_id,
                DeploymentStatus.FAILED,
                status_message=message,
                last_error=last_error,
            )
        except Exception as e:
            logger.exception(f"Could not record failure for deployment {deployment.deployment_id}: {e}")
        logger.error(f"Deployment {deployment.deployment_id} failed: {message}")
        await create_audit_log(
            action=AuditAction.DEPLOYMENT_FAILED,
            actor_id=user_id,
            organization_id=deployment.organization_id,
            resource_type="deployment",
            resource_id=deployment.deployment_id,
            metadata={"error": last_error},
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def deploy(self, deployment_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Run one deploy attempt. Raises a DeploymentError subclass on any failure."""
        deployment = await self.store.get_deployment(deployment_id)
        if not deployment:
            raise NotFoundError("Deployment not found")
        self._check_eligible(deployment)

        if not deployment.vercel_installation_id:
            await self._fail(deployment, NO_INSTALLATION_ERROR, NO_INSTALLATION_ERROR, user_id)
            raise PreconditionError(NO_INSTALLATION_ERROR)

        owner = await self.store.acquire_lock(deployment_id)
        if not owner:
            logger.info(f"Deployment {deployment_id} locked by another run, skipping")
            raise ConcurrentModificationError("Deployment is already being processed")

        try:
            # Re-read under the lease: a previous holder may have moved it on
            deployment = await self.store.get_deployment(deployment_id)
            if not deployment:
                raise NotFoundError("Deployment not found")
            self._check_eligible(deployment)
            return await self._deploy_locked(deployment, user_id)
        finally:
            await self.store.release_lock(deployment_id, owner)

    @staticmethod
    def _check_eligible(deployment: Deployment) -> None:
        if deployment.status not in DEPLOYABLE_STATUSES:
            raise PreconditionError(
                f"Deployment is in {deployment.status.value} status and cannot be deployed"
            )

    async def _deploy_locked(self, deployment: Deployment, user_id: Optional[str]) -> Dict[str, Any]:
        """Run the steps; an unexpected error (storage, encryption) still ends in failed."""
        try:
            return await self._run_steps(deployment, user_id)
        except DeploymentError:
            raise
        except Exception as e:
            logger.exception(f"Deployment {deployment.deployment_id} aborted: {e}")
            detail = str(e) or type(e).__name__
            message = f"Deployment failed: {detail}"
            await self._fail(deployment, message, detail, user_id)
            raise CollaboratorError(message)

    async def _run_steps(self, deployment: Deployment, user_id: Optional[str]) -> Dict[str, Any]:
        deployment_id = deployment.deployment_id
        await create_audit_log(
            action=AuditAction.DEPLOYMENT_STARTED,
            actor_id=user_id,
            organization_id=deployment.organization_id,
            resource_type="deployment",
            resource_id=deployment_id,
            metadata={"target": deployment.target.value, "appName": deployment.app_name},
        )

        deployment = await self._advance(
            deployment_id, DeploymentStatus.CONFIGURING, "Preparing deployment configuration..."
        )

        connection = await self._resolve_connection(deployment, user_id)

        # Generated secrets are persisted before use so a retry sees the same values
        generated = fill_missing_secrets(deployment.environment_variables)
        if generated:
            await self.store.merge_environment_variables(deployment_id, generated)
        env_vars = assemble_environment(
            deployment.environment_variables,
            generated,
            connection.connection_string,
            deployment.database.database_name,
        )

        project_id = await self._ensure_hosting_project(deployment, user_id)

        await self._advance(deployment_id, DeploymentStatus.DEPLOYING, "Configuring environment variables...")
        try:
            pushed = await self._call(
                self.hosting.push_environment_variables(deployment.vercel_installation_id, project_id, env_vars),
                "Environment variable configuration",
            )
        except CollaboratorError as e:
            pushed = HostingResult(success=False, error=e.message)
        if not pushed.success:
            message = f"Failed to configure environment variables: {pushed.error}"
            await self._fail(deployment, message, pushed.error or message, user_id)
            raise CollaboratorError(message)

        await self._advance(deployment_id, DeploymentStatus.DEPLOYING, "Deployment in progress...")
        logger.info(f"Deployment {deployment_id} handed to hosting project {project_id}")

        return {
            "success": True,
            "message": "Deployment initiated successfully",
            "deployment": {
                "deploymentId": deployment_id,
                "vercelProjectId": project_id,
                "status": DeploymentStatus.DEPLOYING.value,
                "deployedUrl": predicted_url(deployment.app_name),
            },
        }

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _resolve_connection(self, deployment: Deployment, user_id: Optional[str]) -> DecryptedConnection:
        db_config = deployment.database
        vault_id = db_config.vault_id
        connection: Optional[DecryptedConnection] = None

        if db_config.provisioning == DatabaseProvisioning.AUTO and not (db_config.cluster_id and vault_id):
            await self._advance(
                deployment.deployment_id, DeploymentStatus.PROVISIONING, "Provisioning MongoDB Atlas cluster..."
            )
            try:
                result = await self._call(
                    self.provisioner.provision_cluster(deployment.organization_id, deployment.project_id, user_id),
                    "Database provisioning",
                )
            except CollaboratorError as e:
                result = ProvisionResult(success=False, error=e.message)
            if not result.success:
                message = f"Database provisioning failed: {result.error}"
                await self._fail(deployment, message, result.error or message, user_id)
                raise CollaboratorError(message)

            vault_id = result.vault_id
            await self.store.update_deployment(
                deployment.deployment_id,
                {"database.clusterId": result.cluster_id, "database.vaultId": vault_id},
            )

        if vault_id:
            try:
                connection = await self._call(
                    self.vault.get_decrypted_connection_string(deployment.organization_id, vault_id),
                    "Vault lookup",
                )
            except CollaboratorError as e:
                message = f"Failed to read database credentials: {e.message}"
                await self._fail(deployment, message, e.message, user_id)
                raise CollaboratorError(message)
        elif db_config.provisioning == DatabaseProvisioning.MANUAL and db_config.connection_string:
            logger.warning(
                f"Deployment {deployment.deployment_id} uses a plaintext manual connection string; "
                "re-save it to move it into the vault"
            )
            connection = DecryptedConnection(connection_string=db_config.connection_string)

        if not connection or not connection.connection_string:
            await self._fail(deployment, NO_CONNECTION_ERROR, NO_CONNECTION_ERROR, user_id)
            raise PreconditionError(NO_CONNECTION_ERROR)
        return connection

    async def _ensure_hosting_project(self, deployment: Deployment, user_id: Optional[str]) -> str:
        if deployment.vercel_project_id:
            logger.info(f"Reusing hosting project {deployment.vercel_project_id} for {deployment.deployment_id}")
            return deployment.vercel_project_id

        await self._advance(deployment.deployment_id, DeploymentStatus.DEPLOYING, "Creating Vercel project...")
        try:
            result = await self._call(
                self.hosting.create_project(
                    deployment.vercel_installation_id,
                    normalize_app_name(deployment.app_name),
                    HOSTING_FRAMEWORK,
                ),
                "Hosting project creation",
            )
        except CollaboratorError as e:
            result = HostingResult(success=False, error=e.message)

        project_id = (result.data or {}).get("id") if result.success else None
        if not project_id:
            error = result.error or "No project id returned"
            message = f"Failed to create Vercel project: {error}"
            await self._fail(deployment, message, error, user_id)
            raise CollaboratorError(message)

        await self.store.update_deployment(deployment.deployment_id, {"vercelProjectId": project_id})
        return project_id


deployment_orchestrator = DeploymentOrchestrator()
