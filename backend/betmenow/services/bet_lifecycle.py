"""
backend/betmenow/services/bet_lifecycle.py

Purpose:
    Pure state machine for bets and their recipient records: allowed status
    edges, creator/recipient outcome inversion, effective-status derivation
    and input validation. No I/O; bet_service and bet_store build on it.

Dependencies:
    - betmenow.models.bet
    - betmenow.services.bet_errors
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from betmenow.config import settings
from betmenow.models.bet import BetStatus, Outcome, RecipientStatus, Visibility
from betmenow.services.bet_errors import BetConflictError, BetValidationError
from betmenow.utils import ensure_utc

RECIPIENT_TRANSITIONS: dict[RecipientStatus, frozenset[RecipientStatus]] = {
    RecipientStatus.pending: frozenset({
        RecipientStatus.in_progress,
        RecipientStatus.rejected,
        RecipientStatus.cancelled,
    }),
    RecipientStatus.in_progress: frozenset({
        RecipientStatus.won,
        RecipientStatus.lost,
        RecipientStatus.cancelled,
    }),
    RecipientStatus.rejected: frozenset(),
    RecipientStatus.won: frozenset(),
    RecipientStatus.lost: frozenset(),
    RecipientStatus.cancelled: frozenset(),
}

BET_TRANSITIONS: dict[BetStatus, frozenset[BetStatus]] = {
    BetStatus.pending: frozenset({
        BetStatus.in_progress,
        BetStatus.rejected,
        BetStatus.cancelled,
    }),
    BetStatus.in_progress: frozenset({BetStatus.completed, BetStatus.cancelled}),
    BetStatus.rejected: frozenset(),
    BetStatus.completed: frozenset(),
    BetStatus.cancelled: frozenset(),
}

TERMINAL_RECIPIENT_STATUSES = frozenset(
    s for s, targets in RECIPIENT_TRANSITIONS.items() if not targets
)
TERMINAL_BET_STATUSES = frozenset(s for s, targets in BET_TRANSITIONS.items() if not targets)
DECIDED_RECIPIENT_STATUSES = frozenset({RecipientStatus.won, RecipientStatus.lost})
CANCELLABLE_RECIPIENT_STATUSES = frozenset({RecipientStatus.pending, RecipientStatus.in_progress})

_CENT = Decimal("0.01")


# ---------- Transitions ----------

def can_transition_recipient(current: RecipientStatus | str, new: RecipientStatus | str) -> bool:
    return RecipientStatus(new) in RECIPIENT_TRANSITIONS[RecipientStatus(current)]


def can_transition_bet(current: BetStatus | str, new: BetStatus | str) -> bool:
    return BetStatus(new) in BET_TRANSITIONS[BetStatus(current)]


def ensure_recipient_transition(current: RecipientStatus | str, new: RecipientStatus | str) -> None:
    """Raise BetConflictError unless current -> new is a legal recipient edge."""
    if not can_transition_recipient(current, new):
        raise BetConflictError(
            f"Recipient cannot move from '{RecipientStatus(current).value}' "
            f"to '{RecipientStatus(new).value}'.",
            current_status=RecipientStatus(current).value,
        )


def ensure_bet_transition(current: BetStatus | str, new: BetStatus | str) -> None:
    if not can_transition_bet(current, new):
        raise BetConflictError(
            f"Bet cannot move from '{BetStatus(current).value}' to '{BetStatus(new).value}'.",
            current_status=BetStatus(current).value,
        )


# ---------- Outcomes ----------

def invert(outcome: Outcome | str) -> Outcome:
    """The counterparty's outcome for a given outcome."""
    return Outcome.lost if Outcome(outcome) == Outcome.won else Outcome.won


def recipient_side_outcome(outcome: Outcome | str, *, actor_is_creator: bool) -> Outcome:
    """Translate the actor's own outcome into what is written on a recipient record.

    The creator has no recipient record: a creator who won is stored as
    `lost` on the recipient's record, and vice versa.
    """
    return invert(outcome) if actor_is_creator else Outcome(outcome)


def creator_outcome_for(recipient_status: RecipientStatus | str) -> Optional[Outcome]:
    """Creator's result in one duel, derived from the recipient's final status."""
    status = RecipientStatus(recipient_status)
    if status == RecipientStatus.won:
        return Outcome.lost
    if status == RecipientStatus.lost:
        return Outcome.won
    return None


# ---------- Derived status ----------

def effective_status(bet: dict[str, Any], recipients: Iterable[dict[str, Any]]) -> BetStatus:
    """Bet status as derived from its recipients.

    Any recipient at won/lost means the bet is completed, whatever the
    stored value says. Otherwise the stored status stands.
    """
    for r in recipients:
        if RecipientStatus(r["status"]) in DECIDED_RECIPIENT_STATUSES:
            return BetStatus.completed
    return BetStatus(bet["status"])


def bet_status_after_reject(
    bet_status: BetStatus | str,
    recipient_statuses: Iterable[RecipientStatus | str],
) -> Optional[BetStatus]:
    """New bet status once a rejection has been applied, or None to leave it.

    A pending bet whose recipients have all rejected becomes rejected. Any
    recipient still pending or in progress keeps the bet as it is.
    """
    if BetStatus(bet_status) != BetStatus.pending:
        return None
    statuses = [RecipientStatus(s) for s in recipient_statuses]
    if statuses and all(s == RecipientStatus.rejected for s in statuses):
        return BetStatus.rejected
    return None


def open_claims(recipients: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Recipient records carrying an unconfirmed claim."""
    return [
        r for r in recipients
        if r.get("pending_outcome") and RecipientStatus(r["status"]) == RecipientStatus.in_progress
    ]


def creator_claim_from(recipients: Iterable[dict[str, Any]]) -> Optional[Outcome]:
    """Creator half of the open claims: the complement of what the recipient
    records hold, or None when there are no open claims or they disagree."""
    claims = {Outcome(r["pending_outcome"]) for r in open_claims(recipients)}
    if len(claims) != 1:
        return None
    return invert(claims.pop())


# ---------- Validation ----------

def normalize_stake(stake: Any) -> float:
    """Validate a stake and round it to cents. Rejects zero, negatives, NaN and booleans."""
    if isinstance(stake, bool) or stake is None:
        raise BetValidationError("Stake must be a number.", field="stake")
    try:
        amount = Decimal(str(stake))
    except (InvalidOperation, ValueError):
        raise BetValidationError("Stake must be a number.", field="stake")
    if not amount.is_finite():
        raise BetValidationError("Stake must be a finite amount.", field="stake")
    amount = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise BetValidationError("Stake must be greater than zero.", field="stake")
    return float(amount)


def normalize_description(description: Any) -> str:
    if description is None:
        description = ""
    if not isinstance(description, str):
        raise BetValidationError("Description must be text.", field="description")
    text = description.strip()
    if not text:
        raise BetValidationError("Description is required.", field="description")
    if len(text) > settings.BET_DESCRIPTION_MAX_LENGTH:
        raise BetValidationError(
            f"Description is limited to {settings.BET_DESCRIPTION_MAX_LENGTH} characters.",
            field="description",
        )
    return text


def normalize_due_date(due_date: Any) -> datetime:
    if not isinstance(due_date, datetime):
        raise BetValidationError("Due date is required.", field="due_date")
    return ensure_utc(due_date)


def normalize_visibility(visibility: Any) -> Visibility:
    if visibility is None:
        return Visibility.private
    try:
        return Visibility(visibility)
    except ValueError:
        raise BetValidationError("Visibility must be 'public' or 'private'.", field="visibility")


def normalize_recipients(recipient_ids: Any, creator_id: str) -> list[str]:
    """Deduplicate recipient ids, keeping order. The creator cannot bet against themselves."""
    if not recipient_ids:
        raise BetValidationError("Select at least one friend to bet with.", field="recipient_ids")
    seen: list[str] = []
    for raw in recipient_ids:
        rid = str(raw or "").strip()
        if not rid:
            raise BetValidationError("Recipient ids must not be empty.", field="recipient_ids")
        if rid == creator_id:
            raise BetValidationError("You cannot bet against yourself.", field="recipient_ids")
        if rid not in seen:
            seen.append(rid)
    if len(seen) > settings.BET_MAX_RECIPIENTS:
        raise BetValidationError(
            f"A bet can have at most {settings.BET_MAX_RECIPIENTS} recipients.",
            field="recipient_ids",
        )
    return seen


def validate_new_bet(
    *,
    description: Any,
    stake: Any,
    due_date: Any,
    visibility: Any,
    recipient_ids: Any,
    creator_id: str,
) -> dict[str, Any]:
    """Validate creation input; returns the cleaned fields."""
    return {
        "description": normalize_description(description),
        "stake": normalize_stake(stake),
        "due_date": normalize_due_date(due_date),
        "visibility": normalize_visibility(visibility),
        "recipient_ids": normalize_recipients(recipient_ids, creator_id),
    }


def validate_bet_update(changes: dict[str, Any]) -> dict[str, Any]:
    """Validate the subset of editable fields that were provided."""
    cleaned: dict[str, Any] = {}
    if changes.get("description") is not None:
        cleaned["description"] = normalize_description(changes["description"])
    if changes.get("stake") is not None:
        cleaned["stake"] = normalize_stake(changes["stake"])
    if changes.get("due_date") is not None:
        cleaned["due_date"] = normalize_due_date(changes["due_date"])
    if changes.get("visibility") is not None:
        cleaned["visibility"] = normalize_visibility(changes["visibility"]).value
    if not cleaned:
        raise BetValidationError("Nothing to update.")
    return cleaned
