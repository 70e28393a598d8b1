import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, field_validator

_USERNAME_RE = re.compile(r"^[a-z0-9_.]{3,30}$")
_PAYMENT_HANDLE_RE = re.compile(r"^[A-Za-z0-9_-]{5,30}$")


def _check_password(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters long.")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit.")
    return v


def _check_payment_handle(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip().lstrip("@")
    if not v:
        return None
    if not _PAYMENT_HANDLE_RE.match(v):
        raise ValueError("Payment handle must be 5-30 letters, digits, '-' or '_'.")
    return v


class UserInDB(BaseModel):
    """Full user document as stored in MongoDB."""
    email: EmailStr
    hashed_password: str
    username: str
    display_name: str
    venmo_username: Optional[str] = None  # Payment handle for settle-up links
    is_banned: bool = False
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime


class UserCreate(BaseModel):
    """Request body for registration."""
    email: EmailStr
    password: str
    username: str
    display_name: Optional[str] = None
    venmo_username: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("username")
    @classmethod
    def username_format(cls, v: str) -> str:
        v = v.strip().lower()
        if not _USERNAME_RE.match(v):
            raise ValueError("Username must be 3-30 characters: a-z, 0-9, '_' or '.'.")
        return v

    @field_validator("venmo_username")
    @classmethod
    def payment_handle(cls, v: Optional[str]) -> Optional[str]:
        return _check_payment_handle(v)


class UserLogin(BaseModel):
    """Request body for login."""
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    venmo_username: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def display_name_length(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not 1 <= len(v) <= 50:
            raise ValueError("Display name must be 1-50 characters.")
        return v

    @field_validator("venmo_username")
    @classmethod
    def payment_handle(cls, v: Optional[str]) -> Optional[str]:
        return _check_payment_handle(v)


class UserResponse(BaseModel):
    """Own profile as returned to the client."""
    id: str
    email: str
    username: str
    display_name: str
    venmo_username: Optional[str] = None
    created_at: datetime


class PublicUserResponse(BaseModel):
    """What other users see, e.g. when picking bet recipients."""
    id: str
    username: str
    display_name: str


class UserStatsResponse(BaseModel):
    user_id: str
    total_bets: int
    bets_created: int
    bets_received: int
    won: int
    lost: int
    in_progress: int
    pending: int
    win_percentage: float
    stake_won: float
    stake_lost: float
    net_winnings: float


class LeaderboardEntry(UserStatsResponse):
    rank: int
    username: str
    display_name: str
    score: float
