"""
backend/betmenow/services/bet_service.py

Purpose:
    Bet lifecycle operations performed on behalf of an acting user: create,
    edit, accept/reject, outcome claims, confirmation/dispute, cancellation,
    deletion and reminders. Every transition is a guarded store write, or one
    transaction when several documents change, followed by an audit entry.

Dependencies:
    - betmenow.services.bet_store
    - betmenow.services.bet_lifecycle
    - betmenow.services.payment_service
    - betmenow.services.audit_service
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request

import betmenow.database as _db
from betmenow.config import settings
from betmenow.models.bet import BetStatus, Outcome, RecipientStatus, Visibility
from betmenow.services.audit_service import log_audit
from betmenow.services.bet_errors import (
    BetConflictError,
    BetNotFoundError,
    BetPermissionError,
    BetValidationError,
)
from betmenow.services.bet_lifecycle import (
    CANCELLABLE_RECIPIENT_STATUSES,
    bet_status_after_reject,
    creator_claim_from,
    effective_status,
    open_claims,
    recipient_side_outcome,
    validate_bet_update,
    validate_new_bet,
)
from betmenow.services.bet_store import bet_store
from betmenow.services.payment_service import payment_link_for
from betmenow.utils import parse_object_id, utcnow

logger = logging.getLogger("betmenow.bet_service")

_OPEN_BET_STATUSES = (BetStatus.pending, BetStatus.in_progress)
_OPEN_RECIPIENT_VALUES = frozenset(s.value for s in CANCELLABLE_RECIPIENT_STATUSES)


# ---------- Views ----------

def serialize_recipient(row: dict) -> dict:
    return {
        "id": str(row["_id"]),
        "recipient_id": row["recipient_id"],
        "status": row["status"],
        "pending_outcome": row.get("pending_outcome"),
        "outcome_claimed_by": row.get("outcome_claimed_by"),
        "outcome_claimed_at": row.get("outcome_claimed_at"),
        "created_at": row["created_at"],
    }


def serialize_bet(bet: dict, recipients: list[dict], payment_links: Optional[list[str]] = None) -> dict:
    """Client view of a bet. `status` is always the effective status."""
    return {
        "id": str(bet["_id"]),
        "description": bet["description"],
        "stake": bet["stake"],
        "due_date": bet["due_date"],
        "visibility": bet.get("visibility", Visibility.private.value),
        "status": effective_status(bet, recipients).value,
        "stored_status": bet["status"],
        "creator_id": bet["creator_id"],
        "creator_pending_outcome": bet.get("creator_pending_outcome"),
        "created_at": bet["created_at"],
        "updated_at": bet.get("updated_at"),
        "recipients": [serialize_recipient(r) for r in recipients],
        "payment_links": payment_links or [],
    }


def _check_drift(bet: dict, recipients: list[dict]) -> BetStatus:
    status = effective_status(bet, recipients)
    if status.value != bet["status"]:
        logger.warning(
            "Bet %s stored status '%s' differs from effective status '%s'",
            bet["_id"], bet["status"], status.value,
        )
    return status


# ---------- Helpers ----------

async def _load(bet_id: Any, session=None) -> tuple[dict, list[dict]]:
    bet = await bet_store.get_bet(bet_id, session=session)
    recipients = await bet_store.list_recipients(bet["_id"], session=session)
    return bet, recipients


def _own_record(recipients: list[dict], actor_id: str) -> Optional[dict]:
    return next((r for r in recipients if r["recipient_id"] == actor_id), None)


def _recipient_record(recipients: list[dict], actor_id: str) -> dict:
    record = _own_record(recipients, actor_id)
    if record is None:
        raise BetPermissionError("You are not a recipient of this bet.")
    return record


def _participant_record(bet: dict, recipients: list[dict], actor_id: str) -> Optional[dict]:
    """The actor's recipient record, or None when the actor is the creator."""
    if bet["creator_id"] == actor_id:
        return None
    record = _own_record(recipients, actor_id)
    if record is None:
        raise BetPermissionError("You are not part of this bet.")
    return record


def _require_creator(bet: dict, actor_id: str, action: str) -> None:
    if bet["creator_id"] != actor_id:
        raise BetPermissionError(f"Only the creator can {action} this bet.")


def _select_claim(
    bet: dict,
    recipients: list[dict],
    actor_id: str,
    recipient_record_id: Optional[str],
) -> dict:
    """Pick the recipient record whose open claim the actor is resolving."""
    own = _participant_record(bet, recipients, actor_id)
    if own is not None:
        if recipient_record_id and recipient_record_id != str(own["_id"]):
            raise BetPermissionError("You can only resolve claims on your own duel.")
        record = own
    elif recipient_record_id:
        record = next((r for r in recipients if str(r["_id"]) == recipient_record_id), None)
        if record is None:
            raise BetNotFoundError("Recipient not found on this bet.", id=recipient_record_id)
    else:
        candidates = open_claims(recipients)
        if not candidates:
            raise BetConflictError("There is no open claim to resolve.")
        if len(candidates) > 1:
            raise BetValidationError(
                "Several claims are open. Name the recipient record to resolve.",
                field="recipient_record_id",
            )
        record = candidates[0]

    if record["status"] != RecipientStatus.in_progress.value or not record.get("pending_outcome"):
        raise BetConflictError(
            "There is no open claim to resolve.",
            recipient_id=str(record["_id"]),
            current_status=record["status"],
        )
    if record.get("outcome_claimed_by") == actor_id:
        raise BetPermissionError("You cannot confirm or dispute your own claim.")
    return record


def _actor_filter(own: Optional[dict], actor_id: str) -> Optional[dict]:
    return None if own is None else {"recipient_id": actor_id}


async def _finalize_duel(record: dict, final: RecipientStatus, *, actor_filter, session) -> dict:
    """Move one duel to won/lost, provided its claim is still the one we read."""
    return await bet_store.update_recipient_status(
        record["_id"],
        RecipientStatus.in_progress,
        final,
        {"pending_outcome": None},
        guard={"pending_outcome": record.get("pending_outcome")},
        actor_filter=actor_filter,
        session=session,
    )


async def _complete_bet(bet: dict, session) -> dict:
    if bet["status"] == BetStatus.completed.value:
        return bet
    return await bet_store.update_bet_status(
        bet["_id"], BetStatus.completed, BetStatus(bet["status"]), session=session,
    )


async def _sync_creator_claim(bet: dict, session) -> tuple[dict, list[dict]]:
    """Recompute the creator half of open claims after a claim changed."""
    recipients = await bet_store.list_recipients(bet["_id"], session=session)
    claim = creator_claim_from(recipients)
    value = claim.value if claim else None
    claimed_at = max(
        (r["outcome_claimed_at"] for r in open_claims(recipients) if r.get("outcome_claimed_at")),
        default=None,
    )
    if value != bet.get("creator_pending_outcome"):
        await bet_store.set_creator_claim(bet["_id"], value, claimed_at, session=session)
    bet = {
        **bet,
        "creator_pending_outcome": value,
        "creator_outcome_claimed_at": claimed_at if value else None,
    }
    return bet, recipients


async def _payment_links(bet: dict, decided: list[dict], actor_id: str) -> list[str]:
    """Settle-up links for every duel the actor just lost."""
    actor_is_creator = bet["creator_id"] == actor_id
    links: list[str] = []
    for row in decided:
        recipient_won = row["status"] == RecipientStatus.won.value
        if recipient_won != actor_is_creator:
            continue
        winner_id = row["recipient_id"] if actor_is_creator else bet["creator_id"]
        link = await payment_link_for(winner_id, bet["stake"], bet["description"])
        if link:
            links.append(link)
    return links


async def _ensure_recipients_exist(recipient_ids: list[str]) -> None:
    oids = [parse_object_id(rid) for rid in recipient_ids]
    unknown = [rid for rid, oid in zip(recipient_ids, oids) if oid is None]
    if not unknown:
        found = await _db.db.users.find(
            {"_id": {"$in": oids}, "is_deleted": False}, {"_id": 1},
        ).to_list(length=None)
        known = {str(u["_id"]) for u in found}
        unknown = [rid for rid in recipient_ids if rid not in known]
    if unknown:
        raise BetValidationError("Unknown recipients.", field="recipient_ids", recipient_ids=unknown)


# ---------- Creation, queries, edits ----------

async def create_bet(
    actor_id: str,
    *,
    description: Any,
    stake: Any,
    due_date: Any,
    recipient_ids: Any,
    visibility: Any = None,
    request: Optional[Request] = None,
) -> dict:
    """Issue a bet to one or more friends. Bet and recipient rows are written atomically."""
    cleaned = validate_new_bet(
        description=description,
        stake=stake,
        due_date=due_date,
        visibility=visibility,
        recipient_ids=recipient_ids,
        creator_id=actor_id,
    )
    await _ensure_recipients_exist(cleaned["recipient_ids"])

    bet, recipients = await bet_store.create_bet(
        description=cleaned["description"],
        stake=cleaned["stake"],
        due_date=cleaned["due_date"],
        visibility=cleaned["visibility"].value,
        creator_id=actor_id,
        recipient_ids=cleaned["recipient_ids"],
    )
    await log_audit(
        actor_id=actor_id,
        target_id=str(bet["_id"]),
        action="BET_CREATED",
        metadata={"stake": bet["stake"], "recipient_ids": cleaned["recipient_ids"]},
        request=request,
    )
    logger.info("Bet %s created by %s for %d recipient(s)", bet["_id"], actor_id, len(recipients))
    return serialize_bet(bet, recipients)


async def get_bet_view(actor_id: str, bet_id: str) -> dict:
    """One bet with its recipients. Private bets are visible to participants only."""
    bet, recipients = await _load(bet_id)
    if (
        bet.get("visibility") != Visibility.public.value
        and bet["creator_id"] != actor_id
        and _own_record(recipients, actor_id) is None
    ):
        raise BetPermissionError("This bet is private.")
    _check_drift(bet, recipients)
    return serialize_bet(bet, recipients)


async def list_bets(actor_id: str, status: Optional[str] = None, limit: int = 50) -> list[dict]:
    """Bets the actor created or received, newest first, optionally by effective status."""
    try:
        wanted = BetStatus(status) if status else None
    except ValueError:
        raise BetValidationError("Unknown bet status filter.", field="status")
    limit = max(1, min(limit, settings.BET_LIST_MAX_LIMIT))
    # Effective status depends on recipients, so a filtered listing is cut after filtering
    bets = await bet_store.list_bets_for_user(actor_id, None if wanted else limit)
    grouped = await bet_store.list_recipients_for_bets([str(b["_id"]) for b in bets])

    views = []
    for bet in bets:
        recipients = grouped.get(str(bet["_id"]), [])
        if wanted is None or _check_drift(bet, recipients) == wanted:
            views.append(serialize_bet(bet, recipients))
            if len(views) == limit:
                break
    return views


async def update_bet(
    actor_id: str, bet_id: str, changes: dict, *, request: Optional[Request] = None,
) -> dict:
    """Edit description, stake, due date or visibility while the bet is pending."""
    cleaned = validate_bet_update(changes)
    bet = await bet_store.update_bet(
        bet_id,
        expected_status=BetStatus.pending,
        set_fields=cleaned,
        creator_id=actor_id,
    )
    recipients = await bet_store.list_recipients(bet["_id"])
    await log_audit(
        actor_id=actor_id,
        target_id=str(bet["_id"]),
        action="BET_UPDATED",
        metadata={"fields": sorted(cleaned)},
        request=request,
    )
    logger.info("Bet %s edited by %s: %s", bet["_id"], actor_id, ", ".join(sorted(cleaned)))
    return serialize_bet(bet, recipients)


# ---------- Accept / reject ----------

async def accept_bet(actor_id: str, bet_id: str, *, request: Optional[Request] = None) -> dict:
    """Recipient accepts. The first acceptance starts the bet."""
    async with bet_store.transaction() as session:
        bet, recipients = await _load(bet_id, session)
        record = _recipient_record(recipients, actor_id)
        current = effective_status(bet, recipients)
        if current not in _OPEN_BET_STATUSES:
            raise BetConflictError("This bet is no longer open.", current_status=current.value)

        await bet_store.update_recipient_status(
            record["_id"],
            RecipientStatus.pending,
            RecipientStatus.in_progress,
            actor_filter={"recipient_id": actor_id},
            session=session,
        )
        if bet["status"] == BetStatus.pending.value:
            bet = await bet_store.update_bet_status(
                bet["_id"], BetStatus.in_progress, BetStatus.pending, session=session,
            )
        recipients = await bet_store.list_recipients(bet["_id"], session=session)

    await log_audit(
        actor_id=actor_id, target_id=str(bet["_id"]), action="BET_ACCEPTED",
        metadata={"recipient_record_id": str(record["_id"])}, request=request,
    )
    logger.info("Bet %s accepted by %s", bet["_id"], actor_id)
    return serialize_bet(bet, recipients)


async def reject_bet(actor_id: str, bet_id: str, *, request: Optional[Request] = None) -> dict:
    """Recipient rejects. The bet is rejected once every recipient has rejected."""
    async with bet_store.transaction() as session:
        bet, recipients = await _load(bet_id, session)
        record = _recipient_record(recipients, actor_id)

        updated = await bet_store.update_recipient_status(
            record["_id"],
            RecipientStatus.pending,
            RecipientStatus.rejected,
            actor_filter={"recipient_id": actor_id},
            session=session,
        )
        statuses = [
            updated["status"] if r["_id"] == updated["_id"] else r["status"]
            for r in recipients
        ]
        new_status = bet_status_after_reject(bet["status"], statuses)
        if new_status is not None:
            bet = await bet_store.update_bet_status(
                bet["_id"], new_status, BetStatus.pending, session=session,
            )
        recipients = await bet_store.list_recipients(bet["_id"], session=session)

    await log_audit(
        actor_id=actor_id, target_id=str(bet["_id"]), action="BET_REJECTED",
        metadata={"recipient_record_id": str(record["_id"]), "bet_status": bet["status"]},
        request=request,
    )
    logger.info("Bet %s rejected by %s (bet now %s)", bet["_id"], actor_id, bet["status"])
    return serialize_bet(bet, recipients)


# ---------- Outcomes ----------

async def declare_outcome(
    actor_id: str, bet_id: str, outcome: Any, *, request: Optional[Request] = None,
) -> dict:
    """Declare the actor's own outcome.

    `won` is a claim the counterparty has to confirm. `lost` is final and
    completes the duel right away. A declaration matching the counterparty's
    open claim acts as a confirmation; a contradicting one is a conflict.
    """
    try:
        outcome = Outcome(outcome)
    except ValueError:
        raise BetValidationError("Outcome must be 'won' or 'lost'.", field="outcome")

    async with bet_store.transaction() as session:
        bet, recipients = await _load(bet_id, session)
        own = _participant_record(bet, recipients, actor_id)

        # Each duel settles on its own; a completed bet may still have running duels
        targets = (
            [r for r in recipients if r["status"] == RecipientStatus.in_progress.value]
            if own is None else [own]
        )
        if not targets or any(t["status"] != RecipientStatus.in_progress.value for t in targets):
            raise BetConflictError(
                "You have no running duel on this bet.",
                current_status=effective_status(bet, recipients).value,
            )

        side = recipient_side_outcome(outcome, actor_is_creator=own is None)
        actor_filter = _actor_filter(own, actor_id)
        decided: list[dict] = []
        claimed = 0
        for record in targets:
            existing = record.get("pending_outcome")
            by_counterparty = existing and record.get("outcome_claimed_by") != actor_id
            if outcome == Outcome.lost or (by_counterparty and existing == side.value):
                decided.append(await _finalize_duel(
                    record, RecipientStatus(side.value), actor_filter=actor_filter, session=session,
                ))
            elif by_counterparty:
                raise BetConflictError(
                    "Your opponent already claimed the opposite outcome. Confirm or dispute it first.",
                    recipient_id=str(record["_id"]),
                    pending_outcome=existing,
                )
            elif not existing:
                await bet_store.update_recipient_status(
                    record["_id"],
                    RecipientStatus.in_progress,
                    RecipientStatus.in_progress,
                    {
                        "pending_outcome": side.value,
                        "outcome_claimed_by": actor_id,
                        "outcome_claimed_at": utcnow(),
                    },
                    guard={"pending_outcome": None},
                    actor_filter=actor_filter,
                    session=session,
                )
                claimed += 1

        if not decided and not claimed:
            raise BetConflictError("You already claimed this outcome. Waiting for confirmation.")
        if decided:
            bet = await _complete_bet(bet, session)
        bet, recipients = await _sync_creator_claim(bet, session)

    links = await _payment_links(bet, decided, actor_id)
    await log_audit(
        actor_id=actor_id,
        target_id=str(bet["_id"]),
        action="BET_OUTCOME_DECLARED" if decided else "BET_OUTCOME_CLAIMED",
        metadata={
            "outcome": outcome.value,
            "decided": [str(r["_id"]) for r in decided],
            "claimed": claimed,
        },
        request=request,
    )
    logger.info(
        "Bet %s: %s declared %s (%d decided, %d claimed)",
        bet["_id"], actor_id, outcome.value, len(decided), claimed,
    )
    return serialize_bet(bet, recipients, links)


async def confirm_outcome(
    actor_id: str,
    bet_id: str,
    recipient_record_id: Optional[str] = None,
    *,
    request: Optional[Request] = None,
) -> dict:
    """Counterparty accepts an open claim; the duel and the bet are completed."""
    async with bet_store.transaction() as session:
        bet, recipients = await _load(bet_id, session)
        record = _select_claim(bet, recipients, actor_id, recipient_record_id)
        own = _own_record(recipients, actor_id)

        # The record always holds the recipient-side value of the claim
        row = await _finalize_duel(
            record,
            RecipientStatus(record["pending_outcome"]),
            actor_filter=_actor_filter(own, actor_id),
            session=session,
        )
        bet = await _complete_bet(bet, session)
        bet, recipients = await _sync_creator_claim(bet, session)

    links = await _payment_links(bet, [row], actor_id)
    await log_audit(
        actor_id=actor_id, target_id=str(bet["_id"]), action="BET_OUTCOME_CONFIRMED",
        metadata={"recipient_record_id": str(row["_id"]), "recipient_status": row["status"]},
        request=request,
    )
    logger.info("Bet %s: claim on %s confirmed by %s (%s)", bet["_id"], row["_id"], actor_id, row["status"])
    return serialize_bet(bet, recipients, links)


async def dispute_outcome(
    actor_id: str,
    bet_id: str,
    recipient_record_id: Optional[str] = None,
    *,
    request: Optional[Request] = None,
) -> dict:
    """Counterparty rejects an open claim. Both halves are cleared; the duel keeps running."""
    async with bet_store.transaction() as session:
        bet, recipients = await _load(bet_id, session)
        record = _select_claim(bet, recipients, actor_id, recipient_record_id)
        own = _own_record(recipients, actor_id)

        await bet_store.update_recipient_status(
            record["_id"],
            RecipientStatus.in_progress,
            RecipientStatus.in_progress,
            {"pending_outcome": None, "outcome_claimed_by": None, "outcome_claimed_at": None},
            guard={
                "pending_outcome": record["pending_outcome"],
                "outcome_claimed_by": record.get("outcome_claimed_by"),
            },
            actor_filter=_actor_filter(own, actor_id),
            session=session,
        )
        bet, recipients = await _sync_creator_claim(bet, session)

    await log_audit(
        actor_id=actor_id, target_id=str(bet["_id"]), action="BET_OUTCOME_DISPUTED",
        metadata={
            "recipient_record_id": str(record["_id"]),
            "disputed_claim": record["pending_outcome"],
            "claimed_by": record.get("outcome_claimed_by"),
        },
        request=request,
    )
    logger.info("Bet %s: claim on %s disputed by %s", bet["_id"], record["_id"], actor_id)
    return serialize_bet(bet, recipients)


# ---------- Cancel / delete / remind ----------

async def cancel_bet(actor_id: str, bet_id: str, *, request: Optional[Request] = None) -> dict:
    """Creator cancels a pending or running bet. Rejected recipients stay rejected.

    On a completed bet only the duels still pending or running are cancelled;
    settled duels and the completed bet status are kept.
    """
    async with bet_store.transaction() as session:
        bet, recipients = await _load(bet_id, session)
        _require_creator(bet, actor_id, "cancel")
        current = effective_status(bet, recipients)
        has_open_duels = any(r["status"] in _OPEN_RECIPIENT_VALUES for r in recipients)
        if current not in _OPEN_BET_STATUSES and not (
            current == BetStatus.completed and has_open_duels
        ):
            raise BetConflictError(
                "Only pending or running bets can be cancelled.", current_status=current.value,
            )

        prior = bet["status"]
        if current == BetStatus.completed:
            bet = await _complete_bet(bet, session)
        else:
            bet = await bet_store.update_bet_status(
                bet["_id"],
                BetStatus.cancelled,
                BetStatus(prior),
                extra_fields={"creator_pending_outcome": None, "creator_outcome_claimed_at": None},
                session=session,
            )
        cancelled = await bet_store.cancel_open_recipients(bet["_id"], session=session)
        if current == BetStatus.completed:
            bet, recipients = await _sync_creator_claim(bet, session)
        else:
            recipients = await bet_store.list_recipients(bet["_id"], session=session)

    await log_audit(
        actor_id=actor_id, target_id=str(bet["_id"]), action="BET_CANCELLED",
        metadata={"prior_status": prior, "recipients_cancelled": cancelled},
        request=request,
    )
    logger.info("Bet %s cancelled by %s (%d recipient(s))", bet["_id"], actor_id, cancelled)
    return serialize_bet(bet, recipients)


async def delete_bet(actor_id: str, bet_id: str, *, request: Optional[Request] = None) -> None:
    """Creator removes a bet nobody has accepted, together with its recipient rows."""
    removed = await bet_store.delete_bet(bet_id, actor_id)
    await log_audit(
        actor_id=actor_id, target_id=str(bet_id), action="BET_DELETED",
        metadata={"recipients_removed": removed}, request=request,
    )


async def send_reminder(
    actor_id: str,
    bet_id: str,
    recipient_record_id: str,
    *,
    request: Optional[Request] = None,
) -> dict:
    """Nudge a recipient who has not answered yet. Logged and audited only."""
    bet, recipients = await _load(bet_id)
    _require_creator(bet, actor_id, "send reminders for")
    record = next((r for r in recipients if str(r["_id"]) == recipient_record_id), None)
    if record is None:
        raise BetNotFoundError("Recipient not found on this bet.", id=recipient_record_id)
    if record["status"] != RecipientStatus.pending.value:
        raise BetConflictError(
            "Only recipients who have not answered yet can be reminded.",
            current_status=record["status"],
        )

    await log_audit(
        actor_id=actor_id, target_id=str(bet["_id"]), action="BET_REMINDER_SENT",
        metadata={"recipient_id": record["recipient_id"]}, request=request,
    )
    logger.info("Reminder for bet %s sent by %s to %s", bet["_id"], actor_id, record["recipient_id"])
    return {"message": "Reminder sent.", "recipient_id": record["recipient_id"]}
