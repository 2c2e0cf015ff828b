import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

USAGE_COLLECTION = "usage"
LICENSES_COLLECTION = "licenses"


def _get_db_name_from_uri(uri: str) -> str:
    # Try to parse db name from URI path; fallback to env or default
    parsed = urlparse(uri)
    if parsed.path and len(parsed.path) > 1:
        return parsed.path.lstrip("/")
    return os.getenv("MONGODB_DB", "trade_journal")


async def init_mongo(uri: Optional[str] = None) -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """Open a Mongo connection and ensure indexes.

    Reads MONGODB_URI and optional pool tuning from environment. The caller
    owns the returned handles and passes them to the stores explicitly.
    """
    uri = uri or os.getenv("MONGODB_URI", "mongodb://localhost:27017/trade_journal")
    max_pool = int(os.getenv("MONGODB_MAX_POOL_SIZE", "100"))
    min_pool = int(os.getenv("MONGODB_MIN_POOL_SIZE", "0"))
    connect_timeout_ms = int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "10000"))
    socket_timeout_ms = int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "20000"))

    try:
        client = AsyncIOMotorClient(
            uri,
            maxPoolSize=max_pool,
            minPoolSize=min_pool,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
            tz_aware=True,
        )
        db_name = _get_db_name_from_uri(uri)
        db = client[db_name]

        # connectivity check is non-fatal; the limiter and authenticator fail open
        if await ping(db):
            logger.info("Connected to MongoDB database '%s'", db_name)

        await ensure_indexes(db)
        return client, db
    except Exception as e:
        logger.exception("Failed to initialize MongoDB: %s", e)
        raise


async def ping(db: AsyncIOMotorDatabase) -> bool:
    try:
        result = await db.command("ping")
        return bool(result.get("ok"))
    except Exception as e:
        logger.warning("MongoDB ping failed: %s", e)
        return False


async def close_mongo(client: Optional[AsyncIOMotorClient]) -> None:
    if client is not None:
        client.close()


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    try:
        # One usage row per (identity, date); conditional upserts rely on it
        await db[USAGE_COLLECTION].create_index(
            [("identity", 1), ("date", 1)], unique=True, name="identity_date_unique_v1"
        )
        await db[LICENSES_COLLECTION].create_index([("key", 1)], unique=True, name="key_unique_v1")
        logger.info("MongoDB indexes ensured for %s, %s", USAGE_COLLECTION, LICENSES_COLLECTION)
    except Exception as e:  # pragma: no cover - index creation failures should not crash
        logger.warning("Failed to ensure MongoDB indexes: %s", e)
