from motor.motor_asyncio import AsyncIOMotorDatabase
from voucher_engine.core.database import get_database


async def get_db() -> AsyncIOMotorDatabase:
    """Dependency to get database instance."""
    return get_database()
