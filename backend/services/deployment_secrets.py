"""
Secret generation and environment assembly for deployments.

Precedence, lowest first: stored values, freshly generated secrets, the
resolved database connection, fixed standalone flags and host URL placeholders.
"""
import base64
import secrets
import uuid
from typing import Optional, Dict, List

from bundles.deployment_config import core_env_vars, DEFAULT_DATABASE_NAME, HOST_URL_PLACEHOLDER
from bundles.models import EnvGenerator, EnvVarSpec

SECRET_BYTES = 32

# Base64 keys are expected by the standalone app's vault
BASE64_SECRETS = {"VAULT_ENCRYPTION_KEY"}

# Set at deploy time only, never persisted on the deployment record
RUNTIME_ONLY_KEYS = {"MONGODB_URI"}


def generate_hex_secret(num_bytes: int = SECRET_BYTES) -> str:
    return secrets.token_hex(num_bytes)


def generate_base64_secret(num_bytes: int = SECRET_BYTES) -> str:
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def generate_value(spec: EnvVarSpec) -> str:
    if spec.generator == EnvGenerator.UUID:
        return str(uuid.uuid4())
    if spec.name in BASE64_SECRETS:
        return generate_base64_secret()
    return generate_hex_secret()


def generated_specs() -> List[EnvVarSpec]:
    """Core specs that need a value generated at deploy time."""
    required, optional = core_env_vars()
    return [s for s in required + optional if s.generator != EnvGenerator.NONE]


def fill_missing_secrets(stored: Dict[str, str]) -> Dict[str, str]:
    """Return only the newly generated values; existing keys are never regenerated."""
    return {
        spec.name: generate_value(spec)
        for spec in generated_specs()
        if not stored.get(spec.name)
    }


def assemble_environment(
    stored: Dict[str, str],
    generated: Dict[str, str],
    connection_string: str,
    database_name: Optional[str],
) -> Dict[str, str]:
    env: Dict[str, str] = {}
    env.update(stored)
    env.update(generated)
    env["MONGODB_URI"] = connection_string
    env["MONGODB_DATABASE"] = database_name or DEFAULT_DATABASE_NAME
    env["NEXT_PUBLIC_APP_URL"] = HOST_URL_PLACEHOLDER
    env["APP_URL"] = HOST_URL_PLACEHOLDER
    env["STANDALONE_MODE"] = "true"
    return env

