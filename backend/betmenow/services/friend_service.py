"""
backend/betmenow/services/friend_service.py

Purpose:
    Reciprocal friendships between users. Adding or removing a friend always
    writes both directions, so each side's list can be read with one query.

Dependencies:
    - betmenow.database
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status
from pymongo.errors import DuplicateKeyError

import betmenow.database as _db
from betmenow.utils import parse_object_id, utcnow

logger = logging.getLogger("betmenow.friend_service")

_PUBLIC_FIELDS = {"username": 1, "display_name": 1}


async def _active_user(user_id: str) -> dict:
    oid = parse_object_id(user_id)
    user = None
    if oid is not None:
        user = await _db.db.users.find_one({"_id": oid, "is_deleted": False}, _PUBLIC_FIELDS)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return user


async def add_friend(user_id: str, friend_id: str) -> tuple[dict, bool]:
    """Befriend both ways. Returns the friend and whether anything was new."""
    if friend_id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot add yourself as a friend.",
        )
    friend = await _active_user(friend_id)
    friend_id = str(friend["_id"])

    now = utcnow()
    created = 0
    try:
        async with _db.transaction() as session:
            for owner, other in ((user_id, friend_id), (friend_id, user_id)):
                result = await _db.db.friendships.update_one(
                    {"user_id": owner, "friend_id": other},
                    {"$setOnInsert": {"created_at": now}},
                    upsert=True,
                    session=session,
                )
                created += int(result.upserted_id is not None)
    except DuplicateKeyError:
        # A concurrent add inserted the same pair first
        created = 0

    if created:
        logger.info("Users %s and %s are now friends", user_id, friend_id)
    return friend, bool(created)


async def remove_friend(user_id: str, friend_id: str) -> int:
    """Drop the friendship in both directions. Returns removed row count."""
    result = await _db.db.friendships.delete_many({"$or": [
        {"user_id": user_id, "friend_id": friend_id},
        {"user_id": friend_id, "friend_id": user_id},
    ]})
    if not result.deleted_count:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This user is not in your friends list.",
        )
    logger.info("Users %s and %s are no longer friends", user_id, friend_id)
    return result.deleted_count


async def list_friends(user_id: str) -> list[dict]:
    """Active friends of a user, alphabetical by username."""
    rows = await _db.db.friendships.find(
        {"user_id": user_id}, {"friend_id": 1},
    ).to_list(length=None)
    oids = [oid for oid in (parse_object_id(r["friend_id"]) for r in rows) if oid]
    if not oids:
        return []
    return await _db.db.users.find(
        {"_id": {"$in": oids}, "is_deleted": False}, _PUBLIC_FIELDS,
    ).sort("username", 1).to_list(length=None)
