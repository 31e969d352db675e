"""
Interfaces the deployment orchestrator drives.

Concrete implementations live alongside (connection_vault, atlas_provisioning,
vercel_client); tests substitute AsyncMocks with the same shape.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any


@dataclass
class ProvisionResult:
    success: bool
    cluster_id: Optional[str] = None
    vault_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DecryptedConnection:
    connection_string: str
    database: Optional[str] = None


@dataclass
class HostingResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class DatabaseProvisioner(ABC):
    """Creates a managed database cluster scoped to an organization/project."""

    @abstractmethod
    async def provision_cluster(self, organization_id: str, project_id: str, user_id: Optional[str]) -> ProvisionResult:
        pass


class ConnectionVaultBase(ABC):
    """Stores connection strings encrypted, addressed by an opaque vault id."""

    @abstractmethod
    async def store_connection_string(
        self,
        organization_id: str,
        connection_string: str,
        database: Optional[str] = None,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> str:
        pass

    @abstractmethod
    async def get_decrypted_connection_string(self, organization_id: str, vault_id: str) -> Optional[DecryptedConnection]:
        pass


class HostingPlatform(ABC):

    @abstractmethod
    async def create_project(self, installation_id: str, name: str, framework: str) -> HostingResult:
        pass

    @abstractmethod
    async def push_environment_variables(
        self, installation_id: str, project_id: str, env_vars: Dict[str, str]
    ) -> HostingResult:
        pass

    @abstractmethod
    async def get_latest_deployment(self, installation_id: str, project_id: str) -> HostingResult:
        """data carries the platform deployment: id, url, state."""
        pass
