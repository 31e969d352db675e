"""
Deployment and bundle API routes through the FastAPI TestClient.

Services, membership lookups and audit writes are patched; these tests cover
request validation, authorization and the {"error": ...} response shape.
"""
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from auth import create_access_token
from conftest import sample_form, sample_workflow
from bundles.exporter import create_bundle
from models import Deployment, DeploymentStatus, DeploymentTarget
from utils.errors import CollaboratorError, PreconditionError

DEPLOYMENT_ID = "deploy_api000000000001"


def _headers(user_id="user_1"):
    return {"Authorization": f"Bearer {create_access_token({'user_id': user_id})}"}


def _deployment(**overrides):
    data = dict(
        deployment_id=DEPLOYMENT_ID,
        project_id="proj_1",
        organization_id="org_1",
        target=DeploymentTarget.VERCEL,
        app_name="Intake App",
        environment_variables={"SESSION_SECRET": "super-secret"},
    )
    data.update(overrides)
    return Deployment(**data)


def _bundle_document(**kwargs):
    return create_bundle("Intake", "1.2.0", [sample_form()], [sample_workflow()], **kwargs).to_document()


@pytest.fixture
def member():
    with patch("middleware.get_org_role", new=AsyncMock(return_value="member")) as role:
        yield role


@pytest.fixture
def service():
    svc = MagicMock()
    svc.get_deployment = AsyncMock(return_value=_deployment())
    svc.create_deployment = AsyncMock(return_value=_deployment())
    svc.update_deployment = AsyncMock()
    svc.update_deployment_status = AsyncMock(return_value=_deployment(status=DeploymentStatus.CONFIGURING))
    svc.delete_deployment = AsyncMock(return_value=True)
    svc.acquire_lock = AsyncMock(return_value="worker-1")
    svc.release_lock = AsyncMock()
    with patch("routes.deployments.deployment_service", svc), \
         patch("routes.deployments.create_audit_log", new=AsyncMock()):
        yield svc


class TestAuth:

    def test_health_is_public(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"

    def test_token_required(self, client):
        response = client.get(f"/api/deployments/{DEPLOYMENT_ID}")
        assert response.status_code == 401
        assert response.json() == {"detail": "Authentication required"}

    def test_invalid_token(self, client):
        response = client.get(f"/api/deployments/{DEPLOYMENT_ID}", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_non_member_denied(self, client, service):
        with patch("middleware.get_org_role", new=AsyncMock(return_value=None)):
            response = client.get(f"/api/deployments/{DEPLOYMENT_ID}", headers=_headers())
        assert response.status_code == 403
        assert response.json() == {"error": "Not a member of this organization"}


class TestCreateAndRead:

    def test_missing_fields(self, client, member, service):
        response = client.post("/api/deployments", json={"projectId": "proj_1"}, headers=_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields: projectId, organizationId, target, appName"}
        service.create_deployment.assert_not_called()

    def test_create(self, client, member, service):
        response = client.post(
            "/api/deployments",
            json={"projectId": "proj_1", "organizationId": "org_1", "target": "vercel", "appName": "Intake App"},
            headers=_headers(),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["deployment"]["deploymentId"] == DEPLOYMENT_ID
        assert body["deployment"]["status"] == "draft"
        request, user_id = service.create_deployment.call_args[0]
        assert request.app_name == "Intake App"
        assert user_id == "user_1"

    def test_env_values_never_returned(self, client, member, service):
        body = client.get(f"/api/deployments/{DEPLOYMENT_ID}", headers=_headers()).json()
        assert "super-secret" not in json.dumps(body)
        assert body["deployment"]["environmentVariableKeys"] == ["SESSION_SECRET"]

    def test_not_found(self, client, member, service):
        service.get_deployment = AsyncMock(return_value=None)
        response = client.get(f"/api/deployments/{DEPLOYMENT_ID}", headers=_headers())
        assert response.status_code == 404
        assert response.json() == {"error": "Deployment not found"}

    def test_list_requires_scope(self, client, member, service):
        response = client.get("/api/deployments", headers=_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "projectId or organizationId query parameter is required"}

    def test_list_by_organization(self, client, member, service):
        service.list_deployments = AsyncMock(return_value={
            "deployments": [_deployment()], "total": 1, "page": 1, "pageSize": 20, "totalPages": 1,
        })
        response = client.get("/api/deployments?organizationId=org_1", headers=_headers())
        assert response.status_code == 200
        assert response.json()["deployments"][0]["deploymentId"] == DEPLOYMENT_ID
        assert service.list_deployments.call_args.kwargs["organization_id"] == "org_1"


class TestUpdateAndDelete:

    def test_status_only_reopens(self, client, member, service):
        response = client.patch(f"/api/deployments/{DEPLOYMENT_ID}", json={"status": "active"}, headers=_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "Status can only be set to configuring"}
        service.update_deployment_status.assert_not_called()

    def test_reopen_failed(self, client, member, service):
        service.get_deployment = AsyncMock(return_value=_deployment(status=DeploymentStatus.FAILED))
        response = client.patch(f"/api/deployments/{DEPLOYMENT_ID}", json={"status": "configuring"}, headers=_headers())
        assert response.status_code == 200
        assert service.update_deployment_status.call_args[0][1] == DeploymentStatus.CONFIGURING

    def test_env_vars_merged(self, client, member, service):
        service.merge_environment_variables = AsyncMock()
        response = client.patch(
            f"/api/deployments/{DEPLOYMENT_ID}",
            json={"environmentVariables": {"SMTP_HOST": "smtp.example.com"}, "customDomain": "forms.example.com"},
            headers=_headers(),
        )
        assert response.status_code == 200
        service.merge_environment_variables.assert_awaited_once_with(DEPLOYMENT_ID, {"SMTP_HOST": "smtp.example.com"})
        assert service.update_deployment.call_args[0][1] == {"customDomain": "forms.example.com"}

    def test_delete_requires_admin(self, client, member, service):
        response = client.delete(f"/api/deployments/{DEPLOYMENT_ID}", headers=_headers())
        assert response.status_code == 403
        assert response.json() == {"error": "Admin access required"}
        service.delete_deployment.assert_not_called()

    def test_delete_as_owner(self, client, service):
        with patch("middleware.get_org_role", new=AsyncMock(return_value="owner")):
            response = client.delete(f"/api/deployments/{DEPLOYMENT_ID}", headers=_headers())
        assert response.json() == {"success": True}
        service.delete_deployment.assert_awaited_once_with(DEPLOYMENT_ID)


class TestDeploy:

    def test_success(self, client, member, service):
        result = {"success": True, "message": "Deployment initiated successfully", "deployment": {"status": "deploying"}}
        with patch("routes.deployments.deployment_orchestrator.deploy", new=AsyncMock(return_value=result)) as deploy:
            response = client.post(f"/api/deployments/{DEPLOYMENT_ID}/deploy", headers=_headers())
        assert response.status_code == 200
        assert response.json() == result
        deploy.assert_awaited_once_with(DEPLOYMENT_ID, "user_1")

    def test_collaborator_failure_is_500(self, client, member, service):
        error = CollaboratorError("Database provisioning failed: Quota exceeded")
        with patch("routes.deployments.deployment_orchestrator.deploy", new=AsyncMock(side_effect=error)):
            response = client.post(f"/api/deployments/{DEPLOYMENT_ID}/deploy", headers=_headers())
        assert response.status_code == 500
        assert response.json() == {"error": "Database provisioning failed: Quota exceeded"}

    def test_precondition_is_400(self, client, member, service):
        error = PreconditionError("Vercel integration not configured for this deployment")
        with patch("routes.deployments.deployment_orchestrator.deploy", new=AsyncMock(side_effect=error)):
            response = client.post(f"/api/deployments/{DEPLOYMENT_ID}/deploy", headers=_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "Vercel integration not configured for this deployment"}


class TestInjectBundle:

    def test_bundle_required(self, client, member, service):
        response = client.post(f"/api/deployments/{DEPLOYMENT_ID}/inject-bundle", json={}, headers=_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "Bundle is required"}

    def test_invalid_bundle(self, client, member, service, tmp_path):
        document = _bundle_document()
        document["manifest"]["assets"]["forms"] = ["forms/form.json", "forms/form-2.json"]
        with patch("routes.deployments.TEMPLATE_PATH", str(tmp_path)):
            response = client.post(
                f"/api/deployments/{DEPLOYMENT_ID}/inject-bundle", json={"bundle": document}, headers=_headers()
            )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Bundle validation failed"
        assert body["validationErrors"]
        assert list(tmp_path.iterdir()) == []
        service.acquire_lock.assert_not_called()

    def test_non_string_version_rejected(self, client, member, service, tmp_path):
        document = _bundle_document()
        document["manifest"]["version"] = 2
        document["manifest"]["assets"]["forms"] = 5
        with patch("routes.deployments.TEMPLATE_PATH", str(tmp_path)):
            response = client.post(
                f"/api/deployments/{DEPLOYMENT_ID}/inject-bundle", json={"bundle": document}, headers=_headers()
            )
        assert response.status_code == 400
        errors = response.json()["validationErrors"]
        assert "manifest.version must be a string" in errors
        assert "manifest.assets.forms must be an array" in errors
        assert list(tmp_path.iterdir()) == []
        service.update_deployment_status.assert_not_called()

    def test_inject(self, client, member, service, tmp_path):
        document = _bundle_document()
        with patch("routes.deployments.TEMPLATE_PATH", str(tmp_path)):
            response = client.post(
                f"/api/deployments/{DEPLOYMENT_ID}/inject-bundle", json={"bundle": document}, headers=_headers()
            )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["bundlePath"] == str(tmp_path / "bundle.json")
        assert body["bundle"] == {"name": "Intake", "version": "1.2.0", "formsCount": 1, "workflowsCount": 1}
        assert json.loads((tmp_path / "bundle.json").read_text(encoding="utf-8")) == document

        args, kwargs = service.update_deployment_status.call_args
        assert args[1] == DeploymentStatus.CONFIGURING
        assert kwargs["status_message"] == "Bundle injected successfully"
        assert kwargs["fields"]["bundleVersion"] == "1.2.0"
        service.release_lock.assert_awaited_once_with(DEPLOYMENT_ID, "worker-1")

    def test_locked_deployment(self, client, member, service, tmp_path):
        service.acquire_lock = AsyncMock(return_value=None)
        with patch("routes.deployments.TEMPLATE_PATH", str(tmp_path)):
            response = client.post(
                f"/api/deployments/{DEPLOYMENT_ID}/inject-bundle", json={"bundle": _bundle_document()},
                headers=_headers(),
            )
        assert response.status_code == 409
        assert list(tmp_path.iterdir()) == []

    def test_provisioning_cannot_accept_bundle(self, client, member, service, tmp_path):
        service.get_deployment = AsyncMock(return_value=_deployment(status=DeploymentStatus.PROVISIONING))
        with patch("routes.deployments.TEMPLATE_PATH", str(tmp_path)):
            response = client.post(
                f"/api/deployments/{DEPLOYMENT_ID}/inject-bundle", json={"bundle": _bundle_document()},
                headers=_headers(),
            )
        assert response.status_code == 400
        assert response.json() == {"error": "Deployment is in provisioning status and cannot accept a bundle"}


class TestStatus:

    def test_status_view(self, client, member, service):
        body = client.get(f"/api/deployments/{DEPLOYMENT_ID}/status", headers=_headers()).json()
        assert body["deploymentId"] == DEPLOYMENT_ID
        assert body["status"] == "draft"
        assert "environmentVariables" not in body

    def test_history(self, client, member, service):
        events = [{"action": "DEPLOYMENT_CREATED", "resource_id": DEPLOYMENT_ID}]
        with patch("routes.deployments.get_audit_logs_for_resource", new=AsyncMock(return_value=events)):
            body = client.get(f"/api/deployments/{DEPLOYMENT_ID}/history", headers=_headers()).json()
        assert body == {"deploymentId": DEPLOYMENT_ID, "events": events}


class TestProjectBundles:

    def test_org_required(self, client):
        response = client.get("/api/projects/proj_1/bundle", headers=_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "orgId query parameter is required"}

    def test_zip_not_supported(self, client, member):
        response = client.get("/api/projects/proj_1/bundle?orgId=org_1&format=zip", headers=_headers())
        assert response.status_code == 501

    def test_export(self, client, member):
        bundle = create_bundle("Intake", "1.0.0", [sample_form()], [])
        with patch("routes.projects.project_bundle_service.export_project", new=AsyncMock(return_value=bundle)), \
             patch("routes.projects.create_audit_log", new=AsyncMock()):
            response = client.get("/api/projects/proj_1/bundle?orgId=org_1", headers=_headers())
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["bundle"]["manifest"]["name"] == "Intake"
        assert "organizationId" not in body["bundle"]["forms"][0]

    def test_import_rejects_malformed_bundle(self, client, member):
        response = client.post(
            "/api/templates/import",
            json={"organizationId": "org_1", "bundle": {"forms": []}},
            headers=_headers(),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Bundle validation failed"
        assert any(e.startswith("manifest") for e in body["validationErrors"])
