"""
MongoDB connection management using Motor (async driver).

Architecture decision: single DatabaseClient instance shared across all
requests via a module-level singleton. FastAPI's dependency injection
(get_db) gives routes clean access without importing the singleton directly.

Collections used by the territory engine:
  users        — read-only here (username, is_active)
  friendships  — read-only here ({user_id_1, user_id_2, status})
  territories  — GeoJSON geometry with a 2dsphere index
  user_stats   — territories_owned counter per user
  xp_events    — append-only XP ledger

The connection is opened in FastAPI's lifespan (startup) and closed
on shutdown — this is the recommended pattern over @app.on_event.
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    Why a class rather than bare globals: we can safely replace
    .client and .db in tests (monkeypatching a class attribute is
    cleaner than replacing module-level vars).
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton — all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection, validate it with a ping and make sure
    the indexes the resolver relies on exist.

    Fails gracefully if MongoDB is unavailable — the API will still respond
    but DB-dependent endpoints return 503.
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            # Fail fast in tests; real deployments use the URI default (30s)
            serverSelectionTimeoutMS=5000,
            tz_aware=True,
            tlsCAFile=certifi.where(),
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        await ensure_indexes(db_client.db)
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "API running in degraded mode — DB endpoints will fail.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Create the indexes used by overlap scans and leaderboard windows."""
    await db["territories"].create_index([("geometry", "2dsphere")])
    await db["territories"].create_index([("user_id", 1), ("created_at", -1)])
    await db["xp_events"].create_index([("created_at", -1)])
    await db["xp_events"].create_index([("user_id", 1), ("created_at", -1)])
    await db["user_stats"].create_index("user_id", unique=True)
    await db["friendships"].create_index([("user_id_1", 1), ("status", 1)])
    await db["friendships"].create_index([("user_id_2", 1), ("status", 1)])


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency — inject the database into route handlers.

    Returns None when MongoDB is unavailable so routes can answer 503
    instead of crashing.

    Usage in a route:
        async def my_route(db = Depends(get_db)):
            if db is None:
                raise HTTPException(status_code=503, detail="Database unavailable")
    """
    return db_client.db


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
