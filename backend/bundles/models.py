"""
Bundle schema models.

A Bundle is a value object: once exported it is never mutated. Serialized field
names are camelCase so the persisted bundle.json matches what the standalone
template reads.
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class EnvGenerator(str, Enum):
    SECRET = "secret"
    UUID = "uuid"
    NONE = "none"

class DeploymentMode(str, Enum):
    STANDALONE = "standalone"
    CONNECTED = "connected"

class DatabaseProvisioning(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    EXISTING = "existing"


class BundleBaseModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> Dict[str, Any]:
        """Dump with camelCase keys, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# DEPLOYMENT CONFIG
# ============================================================================

class EnvVarSpec(BundleBaseModel):
    name: str
    description: str = ""
    required: bool = False
    default: Optional[str] = None
    generator: EnvGenerator = EnvGenerator.NONE

class IndexSpec(BundleBaseModel):
    # Key order matters for compound indexes; dicts keep insertion order
    key: Dict[str, int]
    name: str
    unique: Optional[bool] = None
    sparse: Optional[bool] = None

class CollectionSpec(BundleBaseModel):
    name: str
    description: Optional[str] = None
    indexes: List[IndexSpec] = Field(default_factory=list)

class EnvironmentSpec(BundleBaseModel):
    required: List[EnvVarSpec] = Field(default_factory=list)
    optional: List[EnvVarSpec] = Field(default_factory=list)

    def all_specs(self) -> List[EnvVarSpec]:
        return self.required + self.optional

class DatabaseSpec(BundleBaseModel):
    provisioning: DatabaseProvisioning = DatabaseProvisioning.AUTO
    collections: List[CollectionSpec] = Field(default_factory=list)
    indexes: List[IndexSpec] = Field(default_factory=list)

class SeedSpec(BundleBaseModel):
    forms: bool = False
    workflows: bool = False
    sample_data: bool = False

class DeploymentConfig(BundleBaseModel):
    mode: DeploymentMode = DeploymentMode.STANDALONE
    environment: EnvironmentSpec = Field(default_factory=EnvironmentSpec)
    database: DatabaseSpec = Field(default_factory=DatabaseSpec)
    seed: SeedSpec = Field(default_factory=SeedSpec)
    branding: Optional[Dict[str, Any]] = None


# ============================================================================
# MANIFEST & BUNDLE
# ============================================================================

class ManifestAssets(BundleBaseModel):
    forms: Optional[List[str]] = None
    workflows: Optional[List[str]] = None
    theme: Optional[str] = None

class BundleManifest(BundleBaseModel):
    name: str
    version: str
    description: Optional[str] = None
    author: Optional[str] = None
    assets: ManifestAssets = Field(default_factory=ManifestAssets)
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class ProjectMetadata(BundleBaseModel):
    name: str
    description: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    branding: Optional[Dict[str, Any]] = None

class BundleMetadata(BundleBaseModel):
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    forms_count: int = 0
    workflows_count: int = 0
    exported_at: Optional[str] = None

class Bundle(BundleBaseModel):
    """Portable package of forms, workflows, theme and deployment metadata.

    Form and workflow definitions stay as plain dicts: they are opaque builder
    documents and must round-trip without losing unknown keys.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    manifest: BundleManifest
    forms: List[Dict[str, Any]] = Field(default_factory=list)
    workflows: List[Dict[str, Any]] = Field(default_factory=list)
    theme: Optional[Dict[str, Any]] = None
    project: Optional[ProjectMetadata] = None
    deployment: Optional[DeploymentConfig] = None
    metadata: Optional[BundleMetadata] = None
