"""
Project bundle API Routes - export a project as a portable bundle and import
a bundle into an organization.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError as PydanticValidationError

from bundles.models import Bundle
from middleware import require_auth, require_org_member
from models import AuditAction, ImportBundleRequest
from services.project_bundle_service import project_bundle_service
from utils.audit import create_audit_log
from utils.errors import DeploymentError, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["bundles"])


class UnsupportedFormatError(DeploymentError):
    status_code = 501


@router.get("/projects/{project_id}/bundle")
async def export_project_bundle(
    project_id: str,
    org_id: Optional[str] = Query(None, alias="orgId"),
    format: str = "json",
    current_user: dict = Depends(require_auth),
):
    """Export every form and workflow of a project, plus its deployment config."""
    if not org_id:
        raise ValidationError("orgId query parameter is required")
    await require_org_member(current_user, org_id)

    if format != "json":
        raise UnsupportedFormatError("ZIP export is not yet supported. Use format=json.")

    bundle = await project_bundle_service.export_project(project_id, org_id)
    await create_audit_log(
        action=AuditAction.BUNDLE_EXPORTED,
        actor_id=current_user["user_id"],
        organization_id=org_id,
        resource_type="project",
        resource_id=project_id,
        metadata={"formsCount": len(bundle.forms), "workflowsCount": len(bundle.workflows)},
    )
    document = bundle.to_document()
    return {"success": True, "bundle": document, "metadata": document.get("metadata")}


@router.post("/templates/import")
async def import_bundle(
    request: ImportBundleRequest,
    current_user: dict = Depends(require_auth),
):
    """Import a bundle's forms and workflows into an organization."""
    await require_org_member(current_user, request.organization_id)

    try:
        bundle = Bundle.model_validate(request.bundle)
    except PydanticValidationError as e:
        raise ValidationError(
            "Bundle validation failed",
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        )

    result = await project_bundle_service.import_into_organization(
        bundle,
        request.organization_id,
        current_user["user_id"],
        project_id=request.project_id,
        preserve_slugs=request.preserve_slugs,
    )
    await create_audit_log(
        action=AuditAction.BUNDLE_IMPORTED,
        actor_id=current_user["user_id"],
        organization_id=request.organization_id,
        resource_type="project",
        resource_id=request.project_id,
        metadata={
            "bundleName": bundle.manifest.name,
            "formsImported": len(result.forms),
            "workflowsImported": len(result.workflows),
            "errors": len(result.errors),
        },
    )
    return project_bundle_service.summarize(result)
