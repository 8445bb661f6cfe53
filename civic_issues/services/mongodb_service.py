import asyncio
import logging
from typing import Optional

import motor.motor_asyncio
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, IndexModel

from civic_issues.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ISSUES_COLLECTION = "issues"

ISSUE_INDEXES = [
    IndexModel([("location", GEOSPHERE)], name="location_2dsphere"),
    IndexModel([("status", ASCENDING), ("createdAt", DESCENDING)], name="status_createdAt"),
    IndexModel([("category", ASCENDING), ("status", ASCENDING)], name="category_status"),
    IndexModel([("reportedBy", ASCENDING), ("createdAt", DESCENDING)], name="reportedBy_createdAt"),
    IndexModel([("assignedTo", ASCENDING), ("status", ASCENDING)], name="assignedTo_status"),
    IndexModel([("priority", ASCENDING), ("status", ASCENDING)], name="priority_status"),
]

client: Optional[motor.motor_asyncio.AsyncIOMotorClient] = None
db = None


def _redact(uri: str) -> str:
    scheme = uri.split("://")[0] if "://" in uri else "mongodb"
    return f"{scheme}://***" if "@" in uri else uri


async def init_db(settings: Optional[Settings] = None, max_retries: int = 3) -> bool:
    """Connect, ping with retries and make sure the issue indexes exist.

    Returns False (and leaves ``db`` unset) when MongoDB cannot be reached, so
    the API can still start and report itself unhealthy.
    """
    global client, db
    settings = settings or get_settings()

    logger.info(f"🔄 Connecting to MongoDB at {_redact(settings.mongo_uri)} (db={settings.mongo_db_name})")
    client = motor.motor_asyncio.AsyncIOMotorClient(
        settings.mongo_uri,
        serverSelectionTimeoutMS=15000,
        connectTimeoutMS=30000,
        socketTimeoutMS=45000,
        maxPoolSize=50,
        retryWrites=True,
    )

    retry_delay = 2.0
    for attempt in range(1, max_retries + 1):
        try:
            await asyncio.wait_for(client.admin.command("ping"), timeout=5.0)
            logger.info(f"✅ MongoDB ping successful on attempt {attempt}")
            break
        except asyncio.TimeoutError:
            logger.warning(f"⏰ Connection attempt {attempt} timed out")
        except Exception as e:
            logger.warning(f"⚠️ Connection attempt {attempt} failed: {str(e)}")
        if attempt == max_retries:
            logger.error("❌ All MongoDB connection attempts failed")
            logger.warning("⚠️ Application starting without MongoDB connection")
            client.close()
            client = None
            return False
        logger.info(f"⏳ Waiting {retry_delay:.1f}s before retry...")
        await asyncio.sleep(retry_delay)
        retry_delay *= 2

    db = client[settings.mongo_db_name]
    try:
        await create_indexes()
        logger.info("📇 Database indexes created/verified successfully")
    except Exception as e:
        logger.warning(f"⚠️ Index creation failed: {str(e)}")
    return True


async def create_indexes() -> None:
    """Geo index for the duplicate radius scan plus the common filter/sort paths."""
    if db is None:
        raise RuntimeError("Database is not initialized for index creation")
    try:
        await db[ISSUES_COLLECTION].create_indexes(ISSUE_INDEXES)
        logger.info("✅ Issue indexes created/verified")
    except Exception as e:
        # IndexOptionsConflict (code 85): an index with the same keys but different options exists
        if getattr(e, "code", None) == 85:
            logger.warning(f"⚠️ Index conflict ignored (likely pre-existing): {str(e)}")
        else:
            raise


async def close_db() -> None:
    global client, db
    if client:
        client.close()
        logger.info("🔒 MongoDB connection closed")
    client = None
    db = None


def get_db():
    if db is None:
        raise RuntimeError("Database connection has not been established")
    return db
