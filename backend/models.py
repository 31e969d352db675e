from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

from bundles.models import DatabaseProvisioning

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class DeploymentStatus(str, Enum):
    DRAFT = "draft"
    CONFIGURING = "configuring"
    PROVISIONING = "provisioning"
    DEPLOYING = "deploying"
    ACTIVE = "active"
    FAILED = "failed"

class DeploymentTarget(str, Enum):
    VERCEL = "vercel"
    NETLIFY = "netlify"
    RAILWAY = "railway"
    SELF_HOSTED = "self-hosted"

class DeploymentEnvironment(str, Enum):
    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"

class HealthCheckStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

class OrgRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"

class AuditAction(str, Enum):
    # Deployments
    DEPLOYMENT_CREATED = "DEPLOYMENT_CREATED"
    DEPLOYMENT_UPDATED = "DEPLOYMENT_UPDATED"
    DEPLOYMENT_DELETED = "DEPLOYMENT_DELETED"
    DEPLOYMENT_STARTED = "DEPLOYMENT_STARTED"
    DEPLOYMENT_FAILED = "DEPLOYMENT_FAILED"
    DEPLOYMENT_ACTIVE = "DEPLOYMENT_ACTIVE"

    # Bundles
    BUNDLE_INJECTED = "BUNDLE_INJECTED"
    BUNDLE_EXPORTED = "BUNDLE_EXPORTED"
    BUNDLE_IMPORTED = "BUNDLE_IMPORTED"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Stored and served with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============================================================================
# DEPLOYMENT
# ============================================================================

class DeploymentDatabase(CamelModel):
    provisioning: DatabaseProvisioning = DatabaseProvisioning.AUTO
    cluster_id: Optional[str] = None
    vault_id: Optional[str] = None
    # Only ever a legacy plaintext value; new manual strings go to the vault
    connection_string: Optional[str] = None
    database_name: str = "netpad_app"

class DeployedBundle(CamelModel):
    forms_count: int = 0
    workflows_count: int = 0
    exported_at: Optional[str] = None

class Deployment(CamelModel):
    deployment_id: str = Field(default_factory=lambda: f"deploy_{uuid.uuid4().hex[:16]}")
    project_id: str
    organization_id: str
    created_by: Optional[str] = None
    target: DeploymentTarget
    app_name: str
    environment: DeploymentEnvironment = DeploymentEnvironment.PRODUCTION
    status: DeploymentStatus = DeploymentStatus.DRAFT
    status_message: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    error_count: int = 0
    database: DeploymentDatabase = Field(default_factory=DeploymentDatabase)
    # Values are Fernet ciphertext while stored; see services.deployment_service
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    branding: Optional[Dict[str, Any]] = None
    custom_domain: Optional[str] = None
    vercel_installation_id: Optional[str] = None
    vercel_project_id: Optional[str] = None
    vercel_deployment_id: Optional[str] = None
    deployed_url: Optional[str] = None
    deployed_at: Optional[datetime] = None
    health_check_status: Optional[HealthCheckStatus] = None
    last_health_check: Optional[datetime] = None
    bundle_version: Optional[str] = None
    deployed_bundle: Optional[DeployedBundle] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    deleted_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def to_public(self) -> Dict[str, Any]:
        """API view: environment values and connection strings never leave the server."""
        data = self.model_dump(by_alias=True, mode="json", exclude={"environment_variables"})
        data["database"].pop("connectionString", None)
        data["environmentVariableKeys"] = sorted(self.environment_variables.keys())
        return data


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CreateDeploymentRequest(CamelModel):
    project_id: Optional[str] = None
    organization_id: Optional[str] = None
    target: Optional[DeploymentTarget] = None
    app_name: Optional[str] = None
    environment: DeploymentEnvironment = DeploymentEnvironment.PRODUCTION
    database: Optional[Dict[str, Any]] = None
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    branding: Optional[Dict[str, Any]] = None
    custom_domain: Optional[str] = None
    vercel_installation_id: Optional[str] = None

    def missing_fields(self) -> List[str]:
        required = {
            "projectId": self.project_id,
            "organizationId": self.organization_id,
            "target": self.target,
            "appName": self.app_name,
        }
        return [name for name, value in required.items() if not value]

class UpdateDeploymentRequest(CamelModel):
    app_name: Optional[str] = None
    environment: Optional[DeploymentEnvironment] = None
    database: Optional[Dict[str, Any]] = None
    environment_variables: Optional[Dict[str, str]] = None
    branding: Optional[Dict[str, Any]] = None
    custom_domain: Optional[str] = None
    vercel_installation_id: Optional[str] = None
    # Only "configuring" is accepted: reopens a finished or failed deployment
    status: Optional[DeploymentStatus] = None

class ImportBundleRequest(CamelModel):
    organization_id: str
    bundle: Dict[str, Any]
    project_id: Optional[str] = None
    preserve_slugs: bool = False


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_now)
