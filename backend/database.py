from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            db_name = os.environ.get('DB_NAME', 'bundle_deploy')
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for deployment lookups and listing."""
        try:
            await self.db.deployments.create_index("deploymentId", unique=True)
            await self.db.deployments.create_index([("projectId", 1), ("createdAt", -1)])
            await self.db.deployments.create_index([("organizationId", 1), ("createdAt", -1)])
            await self.db.deployments.create_index("status")

            await self.db.connection_vaults.create_index("vaultId", unique=True)
            await self.db.connection_vaults.create_index("organizationId")

            await self.db.provisioned_clusters.create_index("organizationId", unique=True)
            await self.db.vercel_integrations.create_index("installationId", unique=True)
            await self.db.organization_members.create_index([("organizationId", 1), ("userId", 1)], unique=True)

            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

            logger.info("MongoDB indexes created")
        except OperationFailure as e:
            # Existing index with different options; leave it for an operator to reconcile
            logger.warning(f"Index creation warning: {e}")

database = Database()

