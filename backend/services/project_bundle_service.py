"""
Project bundle service: export a stored project as a Bundle and import a
Bundle into an organization.

Reads the projects, forms and workflows collections; import writes forms and
workflows. Connection configs are never exported.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from database import database
from bundles.deployment_config import synthesize_deployment_config
from bundles.exporter import create_bundle
from bundles.importer import BundleImportResult, import_bundle
from bundles.models import Bundle, BundleMetadata, ProjectMetadata
from utils.errors import AccessDeniedError, NotFoundError

logger = logging.getLogger(__name__)

BUNDLE_VERSION = "1.0.0"
EXPORT_CATEGORY = "project-export"
DEFAULT_TAGS = ["exported", "project"]


class ProjectBundleService:

    def _get_db(self):
        return database.get_db()

    async def export_project(self, project_id: str, organization_id: str) -> Bundle:
        """Build a bundle from every form and workflow in the project."""
        db = self._get_db()
        project = await db.projects.find_one({"projectId": project_id}, {"_id": 0})
        if not project:
            raise NotFoundError("Project not found")
        if project.get("organizationId") != organization_id:
            raise AccessDeniedError("Project does not belong to this organization")

        forms = await db.forms.find({"projectId": project_id, "organizationId": organization_id}, {"_id": 0}).to_list(length=None)
        workflows = await db.workflows.find({"projectId": project_id, "orgId": organization_id}, {"_id": 0}).to_list(length=None)

        name = project.get("name") or "Exported Project"
        # The project theme is taken from its first form
        theme = forms[0].get("theme") if forms else None
        branding = {"primaryColor": project["color"]} if project.get("color") else None

        bundle = create_bundle(
            name,
            BUNDLE_VERSION,
            forms,
            workflows,
            theme=theme,
            description=project.get("description")
            or f"Project export containing {len(forms)} form(s) and {len(workflows)} workflow(s)",
            tags=project.get("tags") or DEFAULT_TAGS,
            category=EXPORT_CATEGORY,
            project=ProjectMetadata(
                name=name,
                description=project.get("description"),
                settings=project.get("settings"),
                branding=branding,
            ),
        )
        # Synthesize from the exported definitions, not the raw records
        deployment = synthesize_deployment_config(name, bundle.forms, bundle.workflows, [], branding=branding)
        metadata = BundleMetadata(
            project_id=project_id,
            project_name=name,
            forms_count=len(bundle.forms),
            workflows_count=len(bundle.workflows),
            exported_at=datetime.now(timezone.utc).isoformat(),
        )
        bundle = bundle.model_copy(update={"deployment": deployment, "metadata": metadata})
        logger.info(f"Exported project {project_id}: {len(bundle.forms)} forms, {len(bundle.workflows)} workflows")
        return bundle

    async def import_into_organization(
        self,
        bundle: Bundle,
        organization_id: str,
        user_id: str,
        project_id: Optional[str] = None,
        preserve_slugs: bool = False,
    ) -> BundleImportResult:
        db = self._get_db()
        result = import_bundle(bundle, organization_id, user_id, project_id=project_id, preserve_slugs=preserve_slugs)

        # insert_one mutates its argument with _id; insert copies so results stay JSON-clean
        for form in result.forms:
            await db.forms.insert_one(dict(form))
        for workflow in result.workflows:
            await db.workflows.insert_one(dict(workflow))

        logger.info(
            f"Imported bundle {bundle.manifest.name} into {organization_id}: "
            f"{len(result.forms)} forms, {len(result.workflows)} workflows, {len(result.errors)} errors"
        )
        return result

    def summarize(self, result: BundleImportResult) -> Dict[str, Any]:
        return {
            "success": result.success,
            "forms": [{"id": f["id"], "name": f["name"], "slug": f["slug"]} for f in result.forms],
            "workflows": [{"id": w["id"], "name": w["name"], "slug": w["slug"]} for w in result.workflows],
            "errors": result.errors,
        }


project_bundle_service = ProjectBundleService()
