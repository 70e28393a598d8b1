import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from betmenow.database import get_db
from betmenow.models.user import ProfileUpdate, PublicUserResponse, UserResponse, UserStatsResponse
from betmenow.routers.auth import user_response
from betmenow.services.audit_service import log_audit
from betmenow.services.auth_service import get_current_user
from betmenow.services.friend_service import add_friend, list_friends, remove_friend
from betmenow.services.stats_service import user_stats
from betmenow.utils import parse_object_id, utcnow

logger = logging.getLogger("betmenow.user")
router = APIRouter(prefix="/api/users", tags=["users"])


def _public(row: dict) -> PublicUserResponse:
    return PublicUserResponse(
        id=str(row["_id"]), username=row["username"], display_name=row.get("display_name") or row["username"],
    )


@router.patch("/me", response_model=UserResponse)
async def update_profile(
    body: ProfileUpdate,
    request: Request,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    """Change display name and/or payment handle."""
    changes = body.model_dump(exclude_unset=True)
    if changes.get("display_name") is None:
        changes.pop("display_name", None)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update.")

    await db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {**changes, "updated_at": utcnow()}},
    )
    user_id = str(user["_id"])
    await log_audit(
        actor_id=user_id, target_id=user_id, action="PROFILE_UPDATED",
        metadata={"fields": sorted(changes)}, request=request,
    )
    logger.info("User %s updated profile: %s", user_id, ", ".join(sorted(changes)))
    return user_response({**user, **changes})


@router.get("/me/stats", response_model=UserStatsResponse)
async def my_stats(user=Depends(get_current_user)):
    return await user_stats(str(user["_id"]))


@router.get("/search", response_model=list[PublicUserResponse])
async def search_users(
    q: str = Query(..., min_length=1, max_length=50),
    limit: int = Query(20, ge=1, le=50),
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    """Find people to bet with, by username or display name."""
    pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
    rows = await db.users.find(
        {
            "is_deleted": False,
            "_id": {"$ne": user["_id"]},
            "$or": [{"username": pattern}, {"display_name": pattern}],
        },
        {"username": 1, "display_name": 1},
    ).to_list(length=limit)
    return [_public(r) for r in rows]


@router.get("/{user_id}/stats", response_model=UserStatsResponse)
async def stats_for_user(user_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    oid = parse_object_id(user_id)
    target: Optional[dict] = None
    if oid is not None:
        target = await db.users.find_one({"_id": oid, "is_deleted": False}, {"_id": 1})
    if not target:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return await user_stats(user_id)


# ---------- Friends ----------

@router.get("/me/friends", response_model=list[PublicUserResponse])
async def my_friends(user=Depends(get_current_user)):
    return [_public(r) for r in await list_friends(str(user["_id"]))]


@router.post("/me/friends/{friend_id}", status_code=status.HTTP_201_CREATED, response_model=PublicUserResponse)
async def add_to_friends(friend_id: str, request: Request, user=Depends(get_current_user)):
    """Add a friend. The friendship is mutual; adding twice is a no-op."""
    user_id = str(user["_id"])
    friend, created = await add_friend(user_id, friend_id)
    if created:
        await log_audit(
            actor_id=user_id, target_id=str(friend["_id"]), action="FRIEND_ADDED", request=request,
        )
    return _public(friend)


@router.delete("/me/friends/{friend_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_from_friends(friend_id: str, request: Request, user=Depends(get_current_user)):
    user_id = str(user["_id"])
    await remove_friend(user_id, friend_id)
    await log_audit(actor_id=user_id, target_id=friend_id, action="FRIEND_REMOVED", request=request)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
