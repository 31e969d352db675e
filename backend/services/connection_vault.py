"""
Connection vault: organization-scoped, Fernet-encrypted connection strings.

Documents live in the connection_vaults collection; the ciphertext never
leaves this module in decrypted form except through
get_decrypted_connection_string.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import InvalidToken

from database import database
from services.collaborators import ConnectionVaultBase, DecryptedConnection
from utils.crypto import encrypt_secret, decrypt_secret

logger = logging.getLogger(__name__)


class ConnectionVault(ConnectionVaultBase):

    def _get_db(self):
        return database.get_db()

    async def store_connection_string(
        self,
        organization_id: str,
        connection_string: str,
        database: Optional[str] = None,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> str:
        db = self._get_db()
        vault_id = f"vault_{uuid.uuid4().hex[:16]}"
        now = datetime.now(timezone.utc).isoformat()
        await db.connection_vaults.insert_one({
            "vaultId": vault_id,
            "organizationId": organization_id,
            "name": name or "Deployment database",
            "encryptedConnectionString": encrypt_secret(connection_string),
            "database": database,
            "createdBy": created_by,
            "createdAt": now,
            "updatedAt": now,
        })
        logger.info(f"Stored connection string {vault_id} for org {organization_id}")
        return vault_id

    async def get_decrypted_connection_string(self, organization_id: str, vault_id: str) -> Optional[DecryptedConnection]:
        """Return the decrypted entry, or None if missing, foreign or undecryptable."""
        db = self._get_db()
        entry = await db.connection_vaults.find_one(
            {"vaultId": vault_id, "organizationId": organization_id},
            {"_id": 0},
        )
        if not entry:
            logger.warning(f"Vault entry {vault_id} not found for org {organization_id}")
            return None
        try:
            connection_string = decrypt_secret(entry["encryptedConnectionString"])
        except InvalidToken:
            logger.error(f"Vault entry {vault_id} could not be decrypted with the current key")
            return None
        await db.connection_vaults.update_one(
            {"vaultId": vault_id},
            {"$set": {"lastUsedAt": datetime.now(timezone.utc).isoformat()}},
        )
        return DecryptedConnection(connection_string=connection_string, database=entry.get("database"))


connection_vault = ConnectionVault()
