"""
Bundle exporter.

Turns live, tenant-scoped form and workflow records into tenant-agnostic
definitions and assembles them into a Bundle.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from bundles.models import (
    Bundle,
    BundleManifest,
    BundleMetadata,
    DeploymentConfig,
    ManifestAssets,
    ProjectMetadata,
)

# Organization-scoped ids, credentials and access rules never leave the tenant
FORM_EXCLUDED_FIELDS = {
    "_id",
    "id",
    "formId",
    "organizationId",
    "projectId",
    "createdBy",
    "connectionString",
    "dataSource",
    "accessControl",
}

WORKFLOW_EXCLUDED_FIELDS = {
    "_id",
    "id",
    "orgId",
    "organizationId",
    "projectId",
    "createdBy",
    "lastModifiedBy",
    "stats",
}


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def export_form(form: Dict[str, Any]) -> Dict[str, Any]:
    """Strip tenant-specific and secret fields from a form record."""
    return {k: _serialize(v) for k, v in form.items() if k not in FORM_EXCLUDED_FIELDS}


def export_workflow(workflow: Dict[str, Any]) -> Dict[str, Any]:
    """Strip tenant-specific fields and run statistics from a workflow record."""
    return {k: _serialize(v) for k, v in workflow.items() if k not in WORKFLOW_EXCLUDED_FIELDS}


def _asset_paths(folder: str, stem: str, count: int) -> List[str]:
    # forms/form.json, forms/form-2.json, ...
    return [f"{folder}/{stem}.json" if i == 0 else f"{folder}/{stem}-{i + 1}.json" for i in range(count)]


def create_manifest(
    name: str,
    version: str,
    forms: List[Dict[str, Any]],
    workflows: List[Dict[str, Any]],
    has_theme: bool = False,
    description: Optional[str] = None,
    author: Optional[str] = None,
    tags: Optional[List[str]] = None,
    category: Optional[str] = None,
) -> BundleManifest:
    now = datetime.now(timezone.utc).isoformat()
    assets = ManifestAssets(
        forms=_asset_paths("forms", "form", len(forms)) or None,
        workflows=_asset_paths("workflows", "workflow", len(workflows)) or None,
        theme="theme.json" if has_theme else None,
    )
    return BundleManifest(
        name=name,
        version=version,
        description=description,
        author=author,
        assets=assets,
        tags=tags or [],
        category=category,
        created_at=now,
        updated_at=now,
    )


def create_bundle(
    name: str,
    version: str,
    forms: List[Dict[str, Any]],
    workflows: List[Dict[str, Any]],
    theme: Optional[Dict[str, Any]] = None,
    description: Optional[str] = None,
    author: Optional[str] = None,
    tags: Optional[List[str]] = None,
    category: Optional[str] = None,
    project: Optional[ProjectMetadata] = None,
    deployment: Optional[DeploymentConfig] = None,
    metadata: Optional[BundleMetadata] = None,
) -> Bundle:
    """Export live records and package them with a manifest."""
    exported_forms = [export_form(f) for f in forms]
    exported_workflows = [export_workflow(w) for w in workflows]
    manifest = create_manifest(
        name,
        version,
        exported_forms,
        exported_workflows,
        has_theme=theme is not None,
        description=description,
        author=author,
        tags=tags,
        category=category,
    )
    return Bundle(
        manifest=manifest,
        forms=exported_forms,
        workflows=exported_workflows,
        theme=theme,
        project=project,
        deployment=deployment,
        metadata=metadata,
    )
