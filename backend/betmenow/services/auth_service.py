import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError
from fastapi import Depends, HTTPException, Request, Response, status
import jwt
from jwt.exceptions import InvalidTokenError as JWTError

from betmenow.config import settings
import betmenow.database as _db
from betmenow.database import get_db
from betmenow.utils import parse_object_id, utcnow

logger = logging.getLogger("betmenow.auth")
ph = PasswordHasher()

ALGORITHM = "HS256"


def decode_jwt(token: str) -> dict:
    """Decode a JWT with the current secret, falling back to JWT_SECRET_OLD.

    Keeping the old secret around for one refresh lifetime lets the secret
    be rotated without logging everybody out.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        if settings.JWT_SECRET_OLD:
            return jwt.decode(token, settings.JWT_SECRET_OLD, algorithms=[ALGORITHM])
        raise


def hash_password(password: str) -> str:
    return ph.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return ph.verify(hashed, password)
    except VerifyMismatchError:
        return False


def create_access_token(user_id: str) -> str:
    payload = {
        "sub": user_id,
        "exp": utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


async def create_refresh_token(user_id: str, family: Optional[str] = None) -> str:
    """Create a refresh token. Tokens of one login share a family; reuse of a
    rotated token revokes the whole family."""
    expire = utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    jti = secrets.token_hex(16)
    token_family = family or secrets.token_hex(8)

    token = jwt.encode(
        {"sub": user_id, "exp": expire, "type": "refresh", "jti": jti, "family": token_family},
        settings.JWT_SECRET,
        algorithm=ALGORITHM,
    )
    await _db.db.refresh_tokens.insert_one({
        "jti": jti,
        "user_id": user_id,
        "family": token_family,
        "created_at": utcnow(),
        "expires_at": expire,
    })
    return token


async def rotate_refresh_token(old_jti: str, user_id: str, family: str) -> str:
    await _db.db.refresh_tokens.delete_one({"jti": old_jti})
    return await create_refresh_token(user_id, family=family)


async def invalidate_token_family(family: str) -> None:
    result = await _db.db.refresh_tokens.delete_many({"family": family})
    logger.warning(
        "Token family invalidated: %s (%d removed)", family, result.deleted_count,
    )


async def blocklist_access_token(jti: str, expires_at: datetime) -> None:
    """Keep a logged-out access token unusable until it would have expired."""
    await _db.db.access_blocklist.update_one(
        {"jti": jti},
        {"$setOnInsert": {"jti": jti, "expires_at": expires_at}},
        upsert=True,
    )


async def is_refresh_token_valid(jti: str) -> bool:
    doc = await _db.db.refresh_tokens.find_one({"jti": jti}, {"_id": 1})
    return doc is not None


def set_auth_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        path="/",
    )
    response.set_cookie(
        key="refresh_token",
        value=refresh_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path="/api/auth/refresh",
    )


def clear_auth_cookies(response: Response) -> None:
    response.delete_cookie("access_token", path="/")
    response.delete_cookie("refresh_token", path="/api/auth/refresh")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_current_user(request: Request, db=Depends(get_db)) -> dict:
    """FastAPI dependency: resolve the signed-in user from the access cookie."""
    token = request.cookies.get("access_token")
    if not token:
        raise _unauthorized("Not signed in.")

    try:
        payload = decode_jwt(token)
    except JWTError:
        raise _unauthorized("Invalid token.")

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type.")

    jti = payload.get("jti")
    if jti and await _db.db.access_blocklist.find_one({"jti": jti}, {"_id": 1}):
        raise _unauthorized("Token revoked.")

    user_oid = parse_object_id(payload.get("sub"))
    if user_oid is None:
        raise _unauthorized("Invalid token.")

    user = await db.users.find_one({"_id": user_oid, "is_deleted": False})
    if not user:
        raise _unauthorized("User not found.")

    if user.get("is_banned"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has been suspended.",
        )
    return user
