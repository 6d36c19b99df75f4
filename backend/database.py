from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
import logging
from contextlib import asynccontextmanager

from config import get_settings

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        settings = get_settings()
        try:
            # tz_aware: stored datetimes come back as UTC-aware values
            self.client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
            self.db = self.client[settings.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {settings.db_name}")

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
        """Create MongoDB indexes for billing lookups and idempotency."""
        try:
            # One record per subscriber; subscription_id is the webhook correlation key
            await self.db.subscription_records.create_index("subscriber_id", unique=True)
            # Trial records carry no subscription_id; only string ids are unique
            try:
                await self.db.subscription_records.create_index(
                    "subscription_id",
                    unique=True,
                    partialFilterExpression={"subscription_id": {"$type": "string"}},
                )
            except OperationFailure as e:
                logger.warning(f"subscription_records.subscription_id index not created: {e}")
            await self.db.subscription_records.create_index([("status", 1), ("subscription_ends_at", 1)])

            # Remote plan cache - one gateway plan per catalog plan
            await self.db.gateway_plans.create_index("plan_code", unique=True)

            # Webhook idempotency - duplicate event_key must not process twice
            await self.db.webhook_events.create_index("event_key", unique=True)
            await self.db.webhook_events.create_index([("subscription_id", 1), ("created_at", -1)])

            # Audit log indexes - for billing history queries
            await self.db.audit_logs.create_index([("subscriber_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")

            # External user-account store lookups
            await self.db.users.create_index("uid")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.subscription_records.find_one(...)
    """
    settings = get_settings()
    client = None
    try:
        client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
        db = client[settings.db_name]
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {settings.db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
