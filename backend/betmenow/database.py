"""
backend/betmenow/database.py

Purpose:
    MongoDB connection bootstrap, multi-document transactions and index
    management for users, bets and bet recipients.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - betmenow.config
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo.errors import DuplicateKeyError, OperationFailure

from betmenow.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("betmenow.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=settings.MONGO_MAX_POOL_SIZE,
        minPoolSize=settings.MONGO_MIN_POOL_SIZE,
        tz_aware=True,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


@asynccontextmanager
async def transaction() -> AsyncIterator[AsyncIOMotorClientSession]:
    """Run the enclosed writes as one MongoDB transaction.

    Commits when the block exits normally, aborts when it raises.
    Requires a replica set (a single-node replica set is enough).
    """
    if client is None:
        raise RuntimeError("Database is not initialized. Call connect_db() first.")
    async with await client.start_session() as session:
        async with session.start_transaction():
            yield session


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent."""

    # ---- Users ----
    await db.users.create_index("email", unique=True)
    try:
        await db.users.create_index("username", unique=True, sparse=True)
    except (DuplicateKeyError, OperationFailure) as exc:
        logger.warning("Skipped unique username index due to duplicate data: %s", exc)
        await db.users.create_index("username", name="username_lookup")
    await db.users.create_index("is_deleted")

    # ---- Bets ----
    await db.bets.create_index([("creator_id", 1), ("created_at", -1)])
    await db.bets.create_index([("status", 1), ("due_date", 1)])
    await db.bets.create_index([("visibility", 1), ("created_at", -1)])

    # ---- Bet Recipients ----
    # One recipient row per user per bet
    await db.bet_recipients.create_index(
        [("bet_id", 1), ("recipient_id", 1)], unique=True
    )
    await db.bet_recipients.create_index([("recipient_id", 1), ("status", 1)])
    await db.bet_recipients.create_index(
        [("bet_id", 1), ("pending_outcome", 1)],
        partialFilterExpression={"pending_outcome": {"$in": ["won", "lost"]}},
        name="bet_recipients_open_claims",
    )

    # ---- Audit Logs ----
    await db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
    await db.audit_logs.create_index([("actor_id", 1), ("timestamp", -1)])
    await db.audit_logs.create_index([("target_id", 1), ("timestamp", -1)])

    # ---- Auth Tokens (TTL auto-delete) ----
    await db.refresh_tokens.create_index("jti", unique=True)
    await db.refresh_tokens.create_index("user_id")
    await db.refresh_tokens.create_index("family")
    await db.refresh_tokens.create_index("expires_at", expireAfterSeconds=0)

    await db.access_blocklist.create_index("jti", unique=True)
    await db.access_blocklist.create_index("expires_at", expireAfterSeconds=0)

    # ---- Friendships ----
    # Stored in both directions; one row per ordered pair
    await db.friendships.create_index([("user_id", 1), ("friend_id", 1)], unique=True)
    await db.friendships.create_index("friend_id")
