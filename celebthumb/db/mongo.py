from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from celebthumb.core.config import settings
import logging

logger = logging.getLogger(__name__)

class MongoDB:
    client: AsyncIOMotorClient = None
    db = None

    async def connect_to_database(self):
        logger.info("Connecting to MongoDB...")
        try:
            self.client = AsyncIOMotorClient(
                settings.MONGO_URI,
                serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
                tz_aware=True
            )
            self.db = self.client[settings.MONGO_DB_NAME]
            logger.info("Connected to MongoDB.")
        except Exception as e:
            logger.error(f"Could not connect to MongoDB: {e}")
            raise e

    async def ensure_indexes(self):
        """One ledger record per user; webhooks look users up by Stripe customer."""
        users = self.db[settings.USERS_COLLECTION]
        await users.create_index([("user_id", ASCENDING)], unique=True)
        await users.create_index(
            [("stripe_customer_id", ASCENDING), ("stripe_subscription_id", ASCENDING)], sparse=True
        )
        logger.info("MongoDB indexes ensured.")

    async def close_database_connection(self):
        logger.info("Closing MongoDB connection...")
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed.")

mongodb = MongoDB()

async def get_database():
    return mongodb.db

async def get_users_collection():
    db = await get_database()
    return db[settings.USERS_COLLECTION]
