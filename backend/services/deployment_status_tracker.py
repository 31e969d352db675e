"""
Deployment status tracker.

Observes the hosting platform after the orchestrator hands a deployment off:
maps the latest platform build state onto the deployment (deploying -> active
or failed) and health-checks live deployments. Used by the status endpoint and
the scheduled status sync job.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import httpx

from models import AuditAction, Deployment, DeploymentStatus, HealthCheckStatus
from utils.audit import create_audit_log
from utils.errors import DeploymentError

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0
IN_PROGRESS_STATES = {"BUILDING", "INITIALIZING", "QUEUED"}
FAILED_STATES = {"ERROR", "CANCELED"}


class DeploymentStatusTracker:

    def __init__(self, store=None, hosting=None):
        if store is None:
            from services.deployment_service import deployment_service as store
        if hosting is None:
            from services.vercel_client import vercel_client as hosting
        self.store = store
        self.hosting = hosting

    async def poll_deployment_status(self, deployment: Deployment) -> Deployment:
        """Apply the latest hosting build state. Returns the (possibly updated) deployment."""
        if deployment.status != DeploymentStatus.DEPLOYING:
            return deployment
        if not deployment.vercel_project_id or not deployment.vercel_installation_id:
            return deployment

        try:
            result = await self.hosting.get_latest_deployment(
                deployment.vercel_installation_id, deployment.vercel_project_id
            )
        except httpx.HTTPError as e:
            logger.warning(f"Status poll failed for {deployment.deployment_id}: {e}")
            return deployment
        if not result.success:
            logger.warning(f"Status poll failed for {deployment.deployment_id}: {result.error}")
            return deployment
        build: Dict[str, Any] = result.data or {}
        state = (build.get("state") or "").upper()
        if not state:
            return deployment

        try:
            if state == "READY":
                url = build.get("url")
                updated = await self.store.update_deployment_status(
                    deployment.deployment_id,
                    DeploymentStatus.ACTIVE,
                    status_message="Deployment is live",
                    fields={
                        "vercelDeploymentId": build.get("id"),
                        "deployedUrl": f"https://{url}" if url and not url.startswith("http") else url,
                        "deployedAt": datetime.now(timezone.utc).isoformat(),
                    },
                )
                await create_audit_log(
                    action=AuditAction.DEPLOYMENT_ACTIVE,
                    organization_id=deployment.organization_id,
                    resource_type="deployment",
                    resource_id=deployment.deployment_id,
                    metadata={"deployedUrl": updated.deployed_url},
                )
                return updated
            if state in FAILED_STATES:
                return await self.store.update_deployment_status(
                    deployment.deployment_id,
                    DeploymentStatus.FAILED,
                    status_message=f"Build {state.lower()}",
                    last_error=f"Hosting build ended in state {state}",
                    fields={"vercelDeploymentId": build.get("id")},
                )
            if state in IN_PROGRESS_STATES:
                return await self.store.update_deployment_status(
                    deployment.deployment_id,
                    DeploymentStatus.DEPLOYING,
                    status_message=f"Build {state.lower()}",
                    fields={"vercelDeploymentId": build.get("id")},
                )
        except DeploymentError as e:
            # Lost a race with another writer; its status stands
            logger.info(f"Status poll for {deployment.deployment_id} not applied: {e.message}")
            return deployment

        logger.warning(f"Unknown hosting state {state} for {deployment.deployment_id}")
        return deployment

    async def health_check(self, deployment: Deployment) -> Optional[HealthCheckStatus]:
        """GET {deployedUrl}/api/health and record the outcome."""
        if deployment.status != DeploymentStatus.ACTIVE or not deployment.deployed_url:
            return None

        url = f"{deployment.deployed_url.rstrip('/')}/api/health"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            status = HealthCheckStatus.HEALTHY if response.status_code == 200 else HealthCheckStatus.UNHEALTHY
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed for {deployment.deployment_id}: {e}")
            status = HealthCheckStatus.UNHEALTHY

        await self.store.update_deployment(
            deployment.deployment_id,
            {
                "healthCheckStatus": status.value,
                "lastHealthCheck": datetime.now(timezone.utc).isoformat(),
            },
        )
        return status

    async def sync_all(self) -> Dict[str, int]:
        """Poll every deploying deployment and health-check active ones."""
        counts = {"polled": 0, "activated": 0, "failed": 0, "health_checked": 0}
        for deployment in await self.store.get_deploying_deployments():
            counts["polled"] += 1
            updated = await self.poll_deployment_status(deployment)
            if updated.status == DeploymentStatus.ACTIVE:
                counts["activated"] += 1
            elif updated.status == DeploymentStatus.FAILED:
                counts["failed"] += 1
        for deployment in await self.store.get_active_deployments():
            if await self.health_check(deployment) is not None:
                counts["health_checked"] += 1
        return counts


deployment_status_tracker = DeploymentStatusTracker()
