"""
Deployment config synthesizer.

Statically analyzes a project's forms and workflows to work out which
environment variables a standalone deployment needs and which collections and
indexes its database must carry. Pure: no I/O, no clock, same input -> same output.
"""
import logging
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from bundles.models import (
    CollectionSpec,
    DatabaseProvisioning,
    DatabaseSpec,
    DeploymentConfig,
    DeploymentMode,
    EnvGenerator,
    EnvironmentSpec,
    EnvVarSpec,
    IndexSpec,
    SeedSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = "netpad_app"
HOST_URL_PLACEHOLDER = "${VERCEL_URL}"


# ============================================================================
# LOOKUP TABLES
# ============================================================================

class NodeType(str, Enum):
    # Triggers
    FORM_TRIGGER = "form-trigger"
    WEBHOOK_TRIGGER = "webhook-trigger"
    SCHEDULE_TRIGGER = "schedule-trigger"
    MANUAL_TRIGGER = "manual-trigger"
    # Logic
    CONDITIONAL = "conditional"
    LOOP = "loop"
    DELAY = "delay"
    SET_VARIABLE = "set-variable"
    # Integrations
    HTTP_REQUEST = "http-request"
    MONGODB_QUERY = "mongodb-query"
    MONGODB_WRITE = "mongodb-write"
    ATLAS_DATA_API = "atlas-data-api"
    ATLAS_CLUSTER = "atlas-cluster"
    GOOGLE_SHEETS = "google-sheets"
    # Actions
    EMAIL_SEND = "email-send"
    SLACK_SEND = "slack-send"
    NOTIFICATION = "notification"
    # Data
    TRANSFORM = "transform"
    FILTER = "filter"
    MERGE = "merge"
    # AI
    AI_PROMPT = "ai-prompt"
    AI_CLASSIFY = "ai-classify"
    AI_EXTRACT = "ai-extract"


class Integration(str, Enum):
    EMAIL = "email"
    SLACK = "slack"
    GOOGLE_SHEETS = "google_sheets"
    AI = "ai"


NODE_INTEGRATIONS: Dict[NodeType, Optional[Integration]] = {
    NodeType.FORM_TRIGGER: None,
    NodeType.WEBHOOK_TRIGGER: None,
    NodeType.SCHEDULE_TRIGGER: None,
    NodeType.MANUAL_TRIGGER: None,
    NodeType.CONDITIONAL: None,
    NodeType.LOOP: None,
    NodeType.DELAY: None,
    NodeType.SET_VARIABLE: None,
    NodeType.HTTP_REQUEST: None,
    # Uses the app's own database connection
    NodeType.MONGODB_QUERY: None,
    NodeType.MONGODB_WRITE: None,
    NodeType.ATLAS_DATA_API: None,
    NodeType.ATLAS_CLUSTER: None,
    NodeType.GOOGLE_SHEETS: Integration.GOOGLE_SHEETS,
    NodeType.EMAIL_SEND: Integration.EMAIL,
    NodeType.SLACK_SEND: Integration.SLACK,
    NodeType.NOTIFICATION: None,
    NodeType.TRANSFORM: None,
    NodeType.FILTER: None,
    NodeType.MERGE: None,
    NodeType.AI_PROMPT: Integration.AI,
    NodeType.AI_CLASSIFY: Integration.AI,
    NodeType.AI_EXTRACT: Integration.AI,
}


def _spec(name: str, description: str, required: bool, default: Optional[str] = None,
          generator: EnvGenerator = EnvGenerator.NONE) -> EnvVarSpec:
    return EnvVarSpec(name=name, description=description, required=required, default=default, generator=generator)


# (required, optional) per integration
INTEGRATION_ENV_VARS: Dict[Integration, Tuple[List[EnvVarSpec], List[EnvVarSpec]]] = {
    Integration.EMAIL: (
        [
            _spec("SMTP_HOST", "SMTP server hostname", True),
            _spec("SMTP_PORT", "SMTP server port", True, default="587"),
            _spec("SMTP_USER", "SMTP username", True),
            _spec("SMTP_PASS", "SMTP password", True),
            _spec("FROM_EMAIL", "Sender address for outgoing email", True),
        ],
        [],
    ),
    Integration.SLACK: (
        [],
        [
            _spec("SLACK_CLIENT_ID", "Slack app client ID", False),
            _spec("SLACK_CLIENT_SECRET", "Slack app client secret", False),
        ],
    ),
    Integration.GOOGLE_SHEETS: (
        [
            _spec("GOOGLE_SERVICE_ACCOUNT_EMAIL", "Google service account email for Sheets access", True),
            _spec("GOOGLE_PRIVATE_KEY", "Google service account private key", True),
        ],
        [],
    ),
    Integration.AI: (
        [],
        [_spec("OPENAI_API_KEY", "OpenAI API key for AI workflow nodes", False)],
    ),
}

# Tables must cover every enum member so a new node type or integration cannot be added silently
_missing_nodes = set(NodeType) - set(NODE_INTEGRATIONS)
if _missing_nodes:
    raise RuntimeError(f"NODE_INTEGRATIONS missing node types: {sorted(n.value for n in _missing_nodes)}")
_missing_integrations = set(Integration) - set(INTEGRATION_ENV_VARS)
if _missing_integrations:
    raise RuntimeError(f"INTEGRATION_ENV_VARS missing integrations: {sorted(i.value for i in _missing_integrations)}")

FILE_FIELD_TYPES = {"file", "image", "signature"}


def core_env_vars() -> Tuple[List[EnvVarSpec], List[EnvVarSpec]]:
    required = [
        _spec("MONGODB_URI", "MongoDB connection string for the application database", True),
        _spec("SESSION_SECRET", "Secret used to sign session cookies", True, generator=EnvGenerator.SECRET),
        _spec("VAULT_ENCRYPTION_KEY", "Key used to encrypt stored connection credentials", True,
              generator=EnvGenerator.SECRET),
        _spec("NEXT_PUBLIC_APP_URL", "Public URL of the deployed application", True, default=HOST_URL_PLACEHOLDER),
    ]
    optional = [
        _spec("MONGODB_DATABASE", "Database name", False, default=DEFAULT_DATABASE_NAME),
        _spec("APP_URL", "Server-side base URL of the application", False, default=HOST_URL_PLACEHOLDER),
    ]
    return required, optional


def oauth_env_vars() -> List[EnvVarSpec]:
    return [
        _spec("GOOGLE_CLIENT_ID", "Google OAuth client ID (social login)", False),
        _spec("GOOGLE_CLIENT_SECRET", "Google OAuth client secret (social login)", False),
        _spec("GITHUB_CLIENT_ID", "GitHub OAuth client ID (social login)", False),
        _spec("GITHUB_CLIENT_SECRET", "GitHub OAuth client secret (social login)", False),
    ]


# ============================================================================
# ANALYSIS
# ============================================================================

def detect_integrations(workflows: List[Dict[str, Any]]) -> List[Integration]:
    """Integrations used by any workflow node, in first-seen order."""
    found: List[Integration] = []
    for workflow in workflows:
        nodes = (workflow.get("canvas") or {}).get("nodes") or []
        for node in nodes:
            node_type = node.get("type") if isinstance(node, dict) else None
            try:
                integration = NODE_INTEGRATIONS[NodeType(node_type)]
            except ValueError:
                logger.debug(f"Unknown workflow node type ignored: {node_type}")
                continue
            if integration and integration not in found:
                found.append(integration)
    return found


def _bot_protection_enabled(form: Dict[str, Any]) -> bool:
    turnstile = (form.get("botProtection") or {}).get("turnstile") or {}
    return bool(turnstile.get("enabled"))


def _has_file_fields(form: Dict[str, Any]) -> bool:
    for field in form.get("fieldConfigs") or []:
        if isinstance(field, dict) and field.get("type") in FILE_FIELD_TYPES:
            return True
    return False


def generate_environment_spec(
    forms: List[Dict[str, Any]],
    workflows: List[Dict[str, Any]],
) -> EnvironmentSpec:
    required, optional = core_env_vars()

    for integration in detect_integrations(workflows):
        integration_required, integration_optional = INTEGRATION_ENV_VARS[integration]
        required.extend(integration_required)
        optional.extend(integration_optional)

    if any(_bot_protection_enabled(f) for f in forms):
        required.append(_spec("TURNSTILE_SITE_KEY", "Cloudflare Turnstile site key", True))
        required.append(_spec("TURNSTILE_SECRET_KEY", "Cloudflare Turnstile secret key", True))

    if any(_has_file_fields(f) for f in forms):
        required.append(_spec("BLOB_READ_WRITE_TOKEN", "Object storage token for file uploads", True))

    optional.extend(oauth_env_vars())

    # First writer wins across both lists
    seen = set()
    unique_required: List[EnvVarSpec] = []
    unique_optional: List[EnvVarSpec] = []
    for target, specs in ((unique_required, required), (unique_optional, optional)):
        for spec in specs:
            if spec.name in seen:
                continue
            seen.add(spec.name)
            target.append(spec)

    return EnvironmentSpec(required=unique_required, optional=unique_optional)


def _index(collection_prefix: str, suffix: str, key: Dict[str, int], unique: Optional[bool] = None) -> IndexSpec:
    return IndexSpec(key=key, name=f"{collection_prefix}_{suffix}_idx", unique=unique)


def generate_collections(
    workflows: List[Dict[str, Any]],
    connections: List[Dict[str, Any]],
) -> List[CollectionSpec]:
    collections = [
        CollectionSpec(
            name="forms",
            description="Form definitions",
            indexes=[
                _index("forms", "slug", {"slug": 1}, unique=True),
                _index("forms", "project", {"projectId": 1}),
                _index("forms", "status", {"status": 1}),
            ],
        ),
        CollectionSpec(
            name="form_submissions",
            description="Form submission data",
            indexes=[
                _index("submissions", "form", {"formId": 1, "submittedAt": -1}),
                _index("submissions", "status", {"status": 1}),
            ],
        ),
    ]

    if workflows:
        collections.extend([
            CollectionSpec(
                name="workflows",
                description="Workflow definitions",
                indexes=[
                    _index("workflows", "slug", {"slug": 1}, unique=True),
                    _index("workflows", "status", {"status": 1}),
                ],
            ),
            CollectionSpec(
                name="workflow_executions",
                description="Workflow execution history",
                indexes=[
                    _index("executions", "workflow", {"workflowId": 1, "startedAt": -1}),
                    _index("executions", "status", {"status": 1}),
                ],
            ),
            CollectionSpec(
                name="workflow_jobs",
                description="Workflow job queue",
                indexes=[_index("jobs", "status_run", {"status": 1, "runAt": 1})],
            ),
        ])

    if connections:
        collections.append(CollectionSpec(
            name="connection_vaults",
            description="Encrypted data source credentials",
            indexes=[_index("vaults", "org", {"organizationId": 1})],
        ))

    return collections


def synthesize_deployment_config(
    project_name: str,
    forms: List[Dict[str, Any]],
    workflows: List[Dict[str, Any]],
    connections: Optional[List[Dict[str, Any]]] = None,
    mode: DeploymentMode = DeploymentMode.STANDALONE,
    provisioning: DatabaseProvisioning = DatabaseProvisioning.AUTO,
    seed_sample_data: bool = False,
    branding: Optional[Dict[str, Any]] = None,
) -> DeploymentConfig:
    """Derive the deployment config for a project.

    Environment specs come from the core set, workflow node integrations and form
    feature flags; collections from which asset kinds are present.
    """
    connections = connections or []
    collections = generate_collections(workflows, connections)
    indexes = [index for collection in collections for index in collection.indexes]

    return DeploymentConfig(
        mode=mode,
        environment=generate_environment_spec(forms, workflows),
        database=DatabaseSpec(provisioning=provisioning, collections=collections, indexes=indexes),
        seed=SeedSpec(forms=bool(forms), workflows=bool(workflows), sample_data=seed_sample_data),
        branding={"appName": project_name, **(branding or {})},
    )
