"""
Deployment API Routes - create, inspect and run standalone-app deployments.

- CRUD on deployment records (environment values are never returned)
- Run the deploy pipeline once (POST /{id}/deploy)
- Inject a bundle into the deployable template
- Report status, optionally polling the hosting platform first

All endpoints require a bearer token and membership of the deployment's organization.
Domain errors are raised as DeploymentError subclasses and rendered by server.py.
"""
import os
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Body, Query

from bundles.injector import bundle_exists, inject_bundle_into_template, validate_bundle
from database import database
from middleware import require_auth, require_org_member, require_org_admin
from models import (
    AuditAction,
    CreateDeploymentRequest,
    DeployedBundle,
    Deployment,
    DeploymentStatus,
    UpdateDeploymentRequest,
)
from services.deployment_orchestrator import deployment_orchestrator
from services.deployment_service import deployment_service
from services.deployment_state import can_transition
from services.deployment_status_tracker import deployment_status_tracker
from utils.audit import create_audit_log, get_audit_logs_for_resource
from utils.errors import (
    ConcurrentModificationError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/deployments", tags=["deployments"])

TEMPLATE_PATH = os.getenv("TEMPLATE_PATH", "templates/standalone-app")


async def _load_for_member(deployment_id: str, user: dict) -> Deployment:
    deployment = await deployment_service.get_deployment(deployment_id)
    if not deployment:
        raise NotFoundError("Deployment not found")
    await require_org_member(user, deployment.organization_id)
    return deployment


# ============================================================================
# COLLECTION
# ============================================================================

@router.post("")
async def create_deployment(
    request: CreateDeploymentRequest,
    current_user: dict = Depends(require_auth),
):
    """Create a deployment in draft status."""
    if request.missing_fields():
        raise ValidationError("Missing required fields: projectId, organizationId, target, appName")

    await require_org_member(current_user, request.organization_id)

    deployment = await deployment_service.create_deployment(request, current_user["user_id"])
    await create_audit_log(
        action=AuditAction.DEPLOYMENT_CREATED,
        actor_id=current_user["user_id"],
        organization_id=deployment.organization_id,
        resource_type="deployment",
        resource_id=deployment.deployment_id,
        metadata={"projectId": deployment.project_id, "target": deployment.target.value},
    )
    return {"success": True, "deployment": deployment.to_public()}


@router.get("")
async def list_deployments(
    project_id: Optional[str] = Query(None, alias="projectId"),
    organization_id: Optional[str] = Query(None, alias="organizationId"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    status: Optional[DeploymentStatus] = None,
    target: Optional[str] = None,
    current_user: dict = Depends(require_auth),
):
    if not project_id and not organization_id:
        raise ValidationError("projectId or organizationId query parameter is required")

    if not organization_id:
        db = database.get_db()
        project = await db.projects.find_one({"projectId": project_id}, {"_id": 0, "organizationId": 1})
        if not project:
            raise NotFoundError("Project not found")
        organization_id = project["organizationId"]
    await require_org_member(current_user, organization_id)

    result = await deployment_service.list_deployments(
        project_id=project_id,
        organization_id=organization_id,
        page=page,
        page_size=page_size,
        status=status.value if status else None,
        target=target,
    )
    result["deployments"] = [d.to_public() for d in result["deployments"]]
    return result


# ============================================================================
# SINGLE DEPLOYMENT
# ============================================================================

@router.get("/{deployment_id}")
async def get_deployment(deployment_id: str, current_user: dict = Depends(require_auth)):
    deployment = await _load_for_member(deployment_id, current_user)
    return {"deployment": deployment.to_public()}


@router.patch("/{deployment_id}")
async def update_deployment(
    deployment_id: str,
    request: UpdateDeploymentRequest,
    current_user: dict = Depends(require_auth),
):
    """Update editable fields. Setting status is limited to reopening (configuring)."""
    deployment = await _load_for_member(deployment_id, current_user)
    user_id = current_user["user_id"]
    changes = request.model_dump(exclude_unset=True)

    if request.status is not None:
        if request.status != DeploymentStatus.CONFIGURING:
            raise ValidationError("Status can only be set to configuring")
        deployment = await deployment_service.update_deployment_status(
            deployment_id, DeploymentStatus.CONFIGURING, status_message="Reopened for redeployment"
        )

    if request.database is not None:
        deployment = await deployment_service.update_database_config(deployment, request.database, user_id)

    if request.environment_variables:
        await deployment_service.merge_environment_variables(deployment_id, request.environment_variables)

    patch = request.model_dump(
        by_alias=True,
        mode="json",
        exclude_unset=True,
        exclude={"status", "database", "environment_variables"},
    )
    if patch:
        await deployment_service.update_deployment(deployment_id, patch)

    await create_audit_log(
        action=AuditAction.DEPLOYMENT_UPDATED,
        actor_id=user_id,
        organization_id=deployment.organization_id,
        resource_type="deployment",
        resource_id=deployment_id,
        metadata={"fields": sorted(changes.keys())},
    )
    updated = await deployment_service.get_deployment(deployment_id)
    return {"success": True, "deployment": updated.to_public()}


@router.delete("/{deployment_id}")
async def delete_deployment(deployment_id: str, current_user: dict = Depends(require_auth)):
    """Soft delete. Organization admins only."""
    deployment = await deployment_service.get_deployment(deployment_id)
    if not deployment:
        raise NotFoundError("Deployment not found")
    await require_org_admin(current_user, deployment.organization_id)

    await deployment_service.delete_deployment(deployment_id)
    await create_audit_log(
        action=AuditAction.DEPLOYMENT_DELETED,
        actor_id=current_user["user_id"],
        organization_id=deployment.organization_id,
        resource_type="deployment",
        resource_id=deployment_id,
    )
    return {"success": True}


@router.get("/{deployment_id}/history")
async def get_deployment_history(deployment_id: str, current_user: dict = Depends(require_auth)):
    """Audit trail for the deployment, newest first."""
    await _load_for_member(deployment_id, current_user)
    return {"deploymentId": deployment_id, "events": await get_audit_logs_for_resource("deployment", deployment_id)}


# ============================================================================
# PIPELINE
# ============================================================================

@router.post("/{deployment_id}/deploy")
async def deploy(deployment_id: str, current_user: dict = Depends(require_auth)):
    """Run the deploy pipeline once. Status is persisted at every step."""
    await _load_for_member(deployment_id, current_user)
    logger.info(f"Deploy requested for {deployment_id} by {current_user['user_id']}")
    return await deployment_orchestrator.deploy(deployment_id, current_user["user_id"])


@router.post("/{deployment_id}/inject-bundle")
async def inject_bundle(
    deployment_id: str,
    payload: Dict[str, Any] = Body(...),
    current_user: dict = Depends(require_auth),
):
    """Validate a bundle and write it into the deployable template."""
    deployment = await _load_for_member(deployment_id, current_user)

    bundle = payload.get("bundle")
    if not bundle:
        raise ValidationError("Bundle is required")

    result = validate_bundle(bundle)
    if not result.valid:
        raise ValidationError("Bundle validation failed", result.errors)

    if not can_transition(deployment.status, DeploymentStatus.CONFIGURING):
        raise PreconditionError(
            f"Deployment is in {deployment.status.value} status and cannot accept a bundle"
        )

    owner = await deployment_service.acquire_lock(deployment_id)
    if not owner:
        raise ConcurrentModificationError("Deployment is already being processed")
    try:
        bundle_path = inject_bundle_into_template(TEMPLATE_PATH, bundle)
        manifest = bundle["manifest"]
        metadata = bundle.get("metadata") or {}
        summary = DeployedBundle(
            forms_count=len(bundle.get("forms") or []),
            workflows_count=len(bundle.get("workflows") or []),
            exported_at=metadata.get("exportedAt") or manifest.get("updatedAt"),
        )
        await deployment_service.update_deployment_status(
            deployment_id,
            DeploymentStatus.CONFIGURING,
            status_message="Bundle injected successfully",
            fields={
                "bundleVersion": manifest.get("version"),
                "deployedBundle": summary.model_dump(by_alias=True),
            },
        )
    finally:
        await deployment_service.release_lock(deployment_id, owner)

    await create_audit_log(
        action=AuditAction.BUNDLE_INJECTED,
        actor_id=current_user["user_id"],
        organization_id=deployment.organization_id,
        resource_type="deployment",
        resource_id=deployment_id,
        metadata={"bundleName": manifest.get("name"), "bundleVersion": manifest.get("version")},
    )
    return {
        "success": True,
        "bundlePath": bundle_path,
        "bundle": {
            "name": manifest.get("name"),
            "version": manifest.get("version"),
            "formsCount": summary.forms_count,
            "workflowsCount": summary.workflows_count,
        },
    }


@router.get("/{deployment_id}/inject-bundle")
async def get_injected_bundle(deployment_id: str, current_user: dict = Depends(require_auth)):
    """Whether a bundle has been injected, without re-validating it."""
    deployment = await _load_for_member(deployment_id, current_user)
    has_bundle = deployment.deployed_bundle is not None and bundle_exists(TEMPLATE_PATH)
    return {
        "deploymentId": deployment_id,
        "hasBundle": has_bundle,
        "bundle": deployment.deployed_bundle.model_dump(by_alias=True) if has_bundle else None,
        "bundleVersion": deployment.bundle_version,
    }


@router.get("/{deployment_id}/status")
async def get_deployment_status(
    deployment_id: str,
    refresh: bool = False,
    current_user: dict = Depends(require_auth),
):
    """Current status; refresh=true polls the hosting platform first."""
    deployment = await _load_for_member(deployment_id, current_user)
    if refresh:
        deployment = await deployment_status_tracker.poll_deployment_status(deployment)
        await deployment_status_tracker.health_check(deployment)
        deployment = await deployment_service.get_deployment(deployment_id) or deployment

    data = deployment.to_public()
    keys = (
        "deploymentId", "status", "statusMessage", "lastError", "lastErrorAt", "errorCount",
        "deployedUrl", "deployedAt", "vercelProjectId", "vercelDeploymentId",
        "healthCheckStatus", "lastHealthCheck", "updatedAt",
    )
    return {k: data.get(k) for k in keys}
