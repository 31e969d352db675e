"""
Bundle importer.

The inverse of the exporter: takes tenant-agnostic definitions plus tenant
context and produces records ready for insertion, with fresh ids, slugs and
timestamps.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from bundles.models import Bundle
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 100


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class BundleImportResult:
    forms: List[Dict[str, Any]] = field(default_factory=list)
    workflows: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def generate_slug(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to '-', trim hyphens, cap length."""
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower())
    return slug.strip("-")[:SLUG_MAX_LENGTH]


def validate_form_definition(definition: Any) -> ValidationResult:
    """Structural check only: required top-level keys and container types."""
    if not isinstance(definition, dict):
        return ValidationResult(False, ["Form definition must be an object"])
    errors = []
    if not isinstance(definition.get("name"), str):
        errors.append("Form definition must have a name")
    if not isinstance(definition.get("fieldConfigs"), list):
        errors.append("Form definition must have a fieldConfigs array")
    return ValidationResult(not errors, errors)


def validate_workflow_definition(definition: Any) -> ValidationResult:
    if not isinstance(definition, dict):
        return ValidationResult(False, ["Workflow definition must be an object"])
    errors = []
    if not isinstance(definition.get("name"), str):
        errors.append("Workflow definition must have a name")
    if not isinstance(definition.get("canvas"), dict):
        errors.append("Workflow definition must have a canvas object")
    if not isinstance(definition.get("settings"), dict):
        errors.append("Workflow definition must have a settings object")
    return ValidationResult(not errors, errors)


def _resolve_slug(definition: Dict[str, Any], preserve_slug: bool) -> str:
    if preserve_slug and definition.get("slug"):
        return definition["slug"]
    return generate_slug(definition["name"])


def import_form(
    definition: Dict[str, Any],
    organization_id: str,
    user_id: str,
    generate_new_id: bool = True,
    preserve_slug: bool = False,
    project_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a tenant-scoped form record from an exported definition.

    Raises ValidationError when the definition is structurally invalid.
    """
    result = validate_form_definition(definition)
    if not result.valid:
        raise ValidationError("Invalid form definition", result.errors)

    now = datetime.now(timezone.utc).isoformat()
    record = dict(definition)
    if generate_new_id or not record.get("id"):
        record["id"] = f"form_{uuid.uuid4().hex[:16]}"
    record["slug"] = _resolve_slug(definition, preserve_slug)
    record["organizationId"] = organization_id
    record["createdBy"] = user_id
    record["createdAt"] = now
    record["updatedAt"] = now
    if project_id:
        record["projectId"] = project_id
    return record


def import_workflow(
    definition: Dict[str, Any],
    organization_id: str,
    user_id: str,
    generate_new_id: bool = True,
    preserve_slug: bool = False,
    project_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a tenant-scoped workflow record. Imported workflows start as drafts."""
    result = validate_workflow_definition(definition)
    if not result.valid:
        raise ValidationError("Invalid workflow definition", result.errors)

    now = datetime.now(timezone.utc).isoformat()
    record = dict(definition)
    if generate_new_id or not record.get("id"):
        record["id"] = f"wf_{uuid.uuid4().hex[:16]}"
    record["slug"] = _resolve_slug(definition, preserve_slug)
    record["orgId"] = organization_id
    record["createdBy"] = user_id
    record["lastModifiedBy"] = user_id
    record["status"] = "draft"
    record["version"] = 1
    record["stats"] = {"totalExecutions": 0, "successfulExecutions": 0, "failedExecutions": 0}
    record["createdAt"] = now
    record["updatedAt"] = now
    if project_id:
        record["projectId"] = project_id
    return record


def import_bundle(
    bundle: Bundle,
    organization_id: str,
    user_id: str,
    project_id: Optional[str] = None,
    preserve_slugs: bool = False,
) -> BundleImportResult:
    """Import every form and workflow of a bundle; a bad item is reported, not fatal."""
    result = BundleImportResult()

    for index, definition in enumerate(bundle.forms):
        try:
            result.forms.append(import_form(
                definition, organization_id, user_id,
                preserve_slug=preserve_slugs, project_id=project_id,
            ))
        except ValidationError as e:
            result.errors.append(f"Form {index + 1}: {'; '.join(e.validation_errors) or e.message}")

    for index, definition in enumerate(bundle.workflows):
        try:
            result.workflows.append(import_workflow(
                definition, organization_id, user_id,
                preserve_slug=preserve_slugs, project_id=project_id,
            ))
        except ValidationError as e:
            result.errors.append(f"Workflow {index + 1}: {'; '.join(e.validation_errors) or e.message}")

    if result.errors:
        logger.warning(f"Bundle import into {organization_id} finished with {len(result.errors)} errors")
    return result
