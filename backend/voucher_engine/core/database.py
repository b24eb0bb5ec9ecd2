import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from voucher_engine.core.config import settings

logger = logging.getLogger(__name__)

# Global MongoDB client
_client: AsyncIOMotorClient = None
_database: AsyncIOMotorDatabase = None


async def connect_to_mongo():
    """Connect to MongoDB and make sure the engine's indexes exist."""
    global _client, _database
    _client = AsyncIOMotorClient(settings.MONGODB_URI)
    _database = _client[settings.MONGODB_DB_NAME]
    await ensure_indexes(_database)
    logger.info(f"Connected to MongoDB: {settings.MONGODB_DB_NAME}")


async def close_mongo_connection():
    """Close MongoDB connection."""
    global _client
    if _client:
        _client.close()
        logger.info("Closed MongoDB connection")


def get_database() -> AsyncIOMotorDatabase:
    """Get MongoDB database instance."""
    return _database


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """
    Create the unique and lookup indexes used by the services.

    - vouchers.code is unique (codes are stored normalized)
    - a voucher applies to a given order at most once
    - (voucher, user, user_slot) is unique, which caps per-user usage rows
      at usage_limit_per_user; rows without a slot are not constrained
    - an order has at most one PENDING refund request
    - a (voucher, order) pair has at most one redemption cost row
    """
    await db.vouchers.create_index([("code", ASCENDING)], unique=True)
    await db.vouchers.create_index([("voucher_id", ASCENDING)], unique=True)
    await db.vouchers.create_index([("organization_id", ASCENDING), ("is_active", ASCENDING)])
    await db.vouchers.create_index([("assigned_to_user_id", ASCENDING), ("created_at", DESCENDING)])

    await db.voucher_usages.create_index(
        [("voucher_id", ASCENDING), ("order_id", ASCENDING)],
        unique=True
    )
    await db.voucher_usages.create_index(
        [("voucher_id", ASCENDING), ("user_id", ASCENDING), ("user_slot", ASCENDING)],
        unique=True,
        partialFilterExpression={"user_slot": {"$exists": True}}
    )

    await db.refund_requests.create_index([("request_id", ASCENDING)], unique=True)
    await db.refund_requests.create_index([("order_id", ASCENDING), ("status", ASCENDING)])
    await db.refund_requests.create_index(
        [("order_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": "PENDING"}
    )

    await db.voucher_refund_requests.create_index([("request_id", ASCENDING)], unique=True)
    await db.voucher_refund_requests.create_index([("voucher_id", ASCENDING), ("status", ASCENDING)])

    await db.voucher_redemption_costs.create_index(
        [("voucher_id", ASCENDING), ("order_id", ASCENDING)],
        unique=True
    )
    await db.voucher_redemption_costs.create_index([("seller_organization_id", ASCENDING), ("created_at", DESCENDING)])
