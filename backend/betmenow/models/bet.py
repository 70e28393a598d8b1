"""Bet and bet recipient models: stored documents, request bodies, responses."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BetStatus(str, Enum):
    pending = "pending"          # Waiting for recipients to respond
    in_progress = "in_progress"  # At least one recipient accepted
    rejected = "rejected"        # Every recipient rejected
    completed = "completed"      # A recipient reached won/lost
    cancelled = "cancelled"      # Creator cancelled (terminal)


class RecipientStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    rejected = "rejected"
    won = "won"
    lost = "lost"
    cancelled = "cancelled"


class Outcome(str, Enum):
    won = "won"
    lost = "lost"


class Visibility(str, Enum):
    public = "public"
    private = "private"


# ---------- Stored documents ----------

class BetInDB(BaseModel):
    """Bet document as stored in MongoDB."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    description: str
    stake: float
    due_date: datetime
    visibility: Visibility = Visibility.private
    status: BetStatus = BetStatus.pending
    creator_id: str
    # Creator half of an open claim; the recipient half lives on bet_recipients
    creator_pending_outcome: Optional[Outcome] = None
    creator_outcome_claimed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class BetRecipientInDB(BaseModel):
    """One creator-vs-recipient duel inside a bet."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    bet_id: str
    recipient_id: str
    status: RecipientStatus = RecipientStatus.pending
    pending_outcome: Optional[Outcome] = None  # Recipient-side claim awaiting confirmation
    outcome_claimed_by: Optional[str] = None
    outcome_claimed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# ---------- Request bodies ----------

class BetCreate(BaseModel):
    """Request body for issuing a bet to one or more friends."""
    description: str
    stake: float
    due_date: datetime
    visibility: Visibility = Visibility.private
    recipient_ids: List[str] = Field(default_factory=list)


class BetUpdate(BaseModel):
    """Request body for editing a bet that nobody has answered yet."""
    description: Optional[str] = None
    stake: Optional[float] = None
    due_date: Optional[datetime] = None
    visibility: Optional[Visibility] = None


class OutcomeDeclare(BaseModel):
    """Declare the actor's own outcome: won (claim) or lost (final)."""
    outcome: Outcome


class OutcomeResolve(BaseModel):
    """Confirm or dispute a claim. Creators of multi-recipient bets name the record."""
    recipient_record_id: Optional[str] = None


class ReminderCreate(BaseModel):
    recipient_record_id: str


# ---------- Responses ----------

class RecipientResponse(BaseModel):
    id: str
    recipient_id: str
    status: RecipientStatus
    pending_outcome: Optional[Outcome] = None
    outcome_claimed_by: Optional[str] = None
    outcome_claimed_at: Optional[datetime] = None
    created_at: datetime


class BetResponse(BaseModel):
    """Bet data returned to the client. `status` is always the effective status."""
    id: str
    description: str
    stake: float
    due_date: datetime
    visibility: Visibility
    status: BetStatus
    stored_status: BetStatus
    creator_id: str
    creator_pending_outcome: Optional[Outcome] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    recipients: List[RecipientResponse] = Field(default_factory=list)
    payment_links: List[str] = Field(default_factory=list)  # Set when the actor just lost and owes the stake
