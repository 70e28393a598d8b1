import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from jwt.exceptions import InvalidTokenError as JWTError
from pymongo.errors import DuplicateKeyError

from betmenow.database import get_db
from betmenow.models.user import UserCreate, UserInDB, UserLogin, UserResponse
from betmenow.services.audit_service import log_audit
from betmenow.services.auth_service import (
    blocklist_access_token,
    clear_auth_cookies,
    create_access_token,
    create_refresh_token,
    decode_jwt,
    get_current_user,
    hash_password,
    invalidate_token_family,
    is_refresh_token_valid,
    rotate_refresh_token,
    set_auth_cookies,
    verify_password,
)
from betmenow.utils import utcnow

logger = logging.getLogger("betmenow.auth")
router = APIRouter(prefix="/api/auth", tags=["auth"])


def user_response(user: dict) -> UserResponse:
    return UserResponse(
        id=str(user["_id"]),
        email=user["email"],
        username=user["username"],
        display_name=user.get("display_name") or user["username"],
        venmo_username=user.get("venmo_username"),
        created_at=user["created_at"],
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(body: UserCreate, request: Request, response: Response, db=Depends(get_db)):
    """Create an account and sign it in."""
    existing = await db.users.find_one(
        {"$or": [{"email": body.email}, {"username": body.username}]}, {"email": 1},
    )
    if existing:
        field = "email address" if existing.get("email") == body.email else "username"
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"This {field} is already registered.",
        )

    now = utcnow()
    user_doc = UserInDB(
        email=body.email,
        hashed_password=hash_password(body.password),
        username=body.username,
        display_name=(body.display_name or "").strip() or body.username,
        venmo_username=body.venmo_username,
        created_at=now,
        updated_at=now,
    ).model_dump()
    try:
        result = await db.users.insert_one(user_doc)
    except DuplicateKeyError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This email address or username is already registered.",
        )
    user_id = str(result.inserted_id)

    access = create_access_token(user_id)
    refresh = await create_refresh_token(user_id)
    set_auth_cookies(response, access, refresh)

    await log_audit(actor_id=user_id, target_id=user_id, action="REGISTER", request=request)
    logger.info("User registered: %s", user_id)
    return {"message": "Registration successful.", "id": user_id}


@router.post("/login")
async def login(body: UserLogin, request: Request, response: Response, db=Depends(get_db)):
    user = await db.users.find_one({"email": body.email, "is_deleted": False})
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password.",
        )

    user_id = str(user["_id"])
    if not verify_password(body.password, user["hashed_password"]):
        await log_audit(
            actor_id=user_id, target_id=user_id, action="LOGIN_FAILED", request=request,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password.",
        )

    if user.get("is_banned"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has been suspended.",
        )

    access = create_access_token(user_id)
    refresh = await create_refresh_token(user_id)
    set_auth_cookies(response, access, refresh)

    await log_audit(actor_id=user_id, target_id=user_id, action="LOGIN_SUCCESS", request=request)
    logger.info("User logged in: %s", user_id)
    return {"message": "Login successful."}


@router.post("/refresh")
async def refresh_token(request: Request, response: Response):
    """Swap the refresh cookie for a new token pair (rotation)."""
    token = request.cookies.get("refresh_token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No refresh token provided.",
        )

    try:
        payload = decode_jwt(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token.",
        )
    if payload.get("type") != "refresh":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type.",
        )

    jti = payload.get("jti")
    family = payload.get("family")
    user_id = payload.get("sub")

    # A rotated token showing up again means the family leaked
    if not await is_refresh_token_valid(jti):
        if family:
            await invalidate_token_family(family)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has already been used. Please log in again.",
        )

    new_access = create_access_token(user_id)
    new_refresh = await rotate_refresh_token(jti, user_id, family)
    set_auth_cookies(response, new_access, new_refresh)
    return {"message": "Token refreshed."}


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Clear cookies, revoke the refresh family and block the access token."""
    refresh = request.cookies.get("refresh_token")
    if refresh:
        try:
            family = decode_jwt(refresh).get("family")
        except JWTError:
            family = None
        if family:
            await invalidate_token_family(family)

    access = request.cookies.get("access_token")
    if access:
        try:
            payload = decode_jwt(access)
        except JWTError:
            payload = {}
        if payload.get("jti") and payload.get("exp"):
            await blocklist_access_token(
                payload["jti"], datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )

    clear_auth_cookies(response)
    return {"message": "Logged out."}


@router.get("/me", response_model=UserResponse)
async def get_me(user=Depends(get_current_user)):
    return user_response(user)
