from datetime import datetime

from pydantic import BaseModel, Field


class AuditLog(BaseModel):
    """One insert-only audit entry."""

    timestamp: datetime
    actor_id: str  # User-ID or "SYSTEM"
    target_id: str  # Bet-ID or User-ID
    action: str  # e.g. "BET_ACCEPTED", "LOGIN_SUCCESS"
    metadata: dict = Field(default_factory=dict)
    ip_truncated: str = ""
