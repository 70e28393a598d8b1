"""
backend/betmenow/services/bet_store.py

Purpose:
    Persistence access layer for bets and bet recipients. Every status write
    is a compare-and-swap on the expected prior status; failed swaps are
    classified into not-found / not-permitted / conflict by re-reading the
    document. Multi-document changes run inside one MongoDB transaction.

Dependencies:
    - betmenow.database
    - betmenow.services.bet_lifecycle
    - pymongo
"""

from __future__ import annotations

import logging
import functools
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, PyMongoError

import betmenow.database as _db
from betmenow.models.bet import BetInDB, BetRecipientInDB, BetStatus, RecipientStatus
from betmenow.services.bet_errors import (
    BetConflictError,
    BetNotFoundError,
    BetPermissionError,
    BetStoreUnavailableError,
)
from betmenow.services.bet_lifecycle import (
    CANCELLABLE_RECIPIENT_STATUSES,
    ensure_bet_transition,
    ensure_recipient_transition,
)
from betmenow.utils import parse_object_id, utcnow

logger = logging.getLogger("betmenow.bet_store")

_CLEARED_CLAIM = {
    "pending_outcome": None,
    "outcome_claimed_by": None,
    "outcome_claimed_at": None,
}


def _store_call(fn):
    """Surface lost connectivity as BetStoreUnavailableError."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except ConnectionFailure as exc:
            logger.error("Bet store unreachable during %s: %s", fn.__name__, exc)
            raise BetStoreUnavailableError("The bet store is unavailable. Please retry.") from exc
    return wrapper


def _oid(value: Any, kind: str) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    oid = parse_object_id(value)
    if oid is None:
        raise BetNotFoundError(f"{kind} not found.", id=str(value))
    return oid


class BetStore:
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Transaction scope that maps driver failures onto the bet error taxonomy."""
        try:
            async with _db.transaction() as session:
                yield session
        except ConnectionFailure as exc:
            raise BetStoreUnavailableError("The bet store is unavailable. Please retry.") from exc
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError"):
                raise BetConflictError(
                    "The bet was changed concurrently. Reload it and try again."
                ) from exc
            raise

    # ---------- Reads ----------

    @_store_call
    async def get_bet(self, bet_id: Any, *, session=None) -> dict:
        bet = await _db.db.bets.find_one({"_id": _oid(bet_id, "Bet")}, session=session)
        if not bet:
            raise BetNotFoundError("Bet not found.", id=str(bet_id))
        return bet

    @_store_call
    async def list_recipients(self, bet_id: Any, *, session=None) -> list[dict]:
        return await _db.db.bet_recipients.find(
            {"bet_id": str(bet_id)}, session=session,
        ).sort("created_at", 1).to_list(length=None)

    @_store_call
    async def list_recipients_for_bets(self, bet_ids: list[str]) -> dict[str, list[dict]]:
        if not bet_ids:
            return {}
        rows = await _db.db.bet_recipients.find(
            {"bet_id": {"$in": bet_ids}},
        ).sort("created_at", 1).to_list(length=None)
        grouped: dict[str, list[dict]] = {bid: [] for bid in bet_ids}
        for row in rows:
            grouped.setdefault(row["bet_id"], []).append(row)
        return grouped

    @_store_call
    async def list_bets_for_user(self, user_id: str, limit: Optional[int]) -> list[dict]:
        """Bets the user created or received, newest first. `None` means no limit."""
        rows = await _db.db.bet_recipients.find(
            {"recipient_id": user_id}, {"bet_id": 1},
        ).to_list(length=None)
        received = [oid for oid in (parse_object_id(r["bet_id"]) for r in rows) if oid]
        return await _db.db.bets.find(
            {"$or": [{"creator_id": user_id}, {"_id": {"$in": received}}]},
        ).sort("created_at", -1).to_list(length=limit)

    # ---------- Writes ----------

    @_store_call
    async def create_bet(
        self,
        *,
        description: str,
        stake: float,
        due_date: datetime,
        visibility: str,
        creator_id: str,
        recipient_ids: list[str],
    ) -> tuple[dict, list[dict]]:
        """Insert a pending bet and one pending record per recipient, all or nothing."""
        now = utcnow()
        bet_doc = BetInDB(
            description=description,
            stake=stake,
            due_date=due_date,
            visibility=visibility,
            creator_id=creator_id,
            created_at=now,
        ).model_dump()
        async with self.transaction() as session:
            result = await _db.db.bets.insert_one(bet_doc, session=session)
            bet_doc["_id"] = result.inserted_id
            recipients = [
                BetRecipientInDB(
                    bet_id=str(result.inserted_id), recipient_id=rid, created_at=now,
                ).model_dump()
                for rid in recipient_ids
            ]
            inserted = await _db.db.bet_recipients.insert_many(recipients, session=session)
            for doc, rid in zip(recipients, inserted.inserted_ids):
                doc["_id"] = rid
        return bet_doc, recipients

    @_store_call
    async def update_recipient_status(
        self,
        recipient_id: Any,
        expected_status: RecipientStatus,
        new_status: RecipientStatus,
        extra_fields: Optional[dict] = None,
        *,
        guard: Optional[dict] = None,
        actor_filter: Optional[dict] = None,
        session=None,
    ) -> dict:
        """Compare-and-swap a recipient record from expected_status to new_status.

        `guard` adds further preconditions (e.g. no open claim); `actor_filter`
        restricts the write to the authorised party. Returns the updated row.
        """
        if new_status != expected_status:
            ensure_recipient_transition(expected_status, new_status)
        oid = _oid(recipient_id, "Recipient")
        query: dict[str, Any] = {"_id": oid, "status": expected_status.value}
        query.update(guard or {})
        query.update(actor_filter or {})
        updated = await _db.db.bet_recipients.find_one_and_update(
            query,
            {"$set": {**(extra_fields or {}), "status": new_status.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is not None:
            return updated

        current = await _db.db.bet_recipients.find_one({"_id": oid}, session=session)
        if current is None:
            raise BetNotFoundError("Recipient not found.", id=str(recipient_id))
        for key, value in (actor_filter or {}).items():
            if current.get(key) != value:
                raise BetPermissionError("You are not allowed to change this recipient.")
        raise BetConflictError(
            "The recipient is no longer in the expected state.",
            recipient_id=str(oid),
            current_status=current.get("status"),
            pending_outcome=current.get("pending_outcome"),
        )

    @_store_call
    async def update_bet(
        self,
        bet_id: Any,
        *,
        expected_status: BetStatus,
        set_fields: dict,
        creator_id: Optional[str] = None,
        session=None,
    ) -> dict:
        """Compare-and-swap fields on a bet whose stored status must be expected_status."""
        new_status = set_fields.get("status")
        if new_status is not None and new_status != expected_status.value:
            ensure_bet_transition(expected_status, new_status)
        oid = _oid(bet_id, "Bet")
        query: dict[str, Any] = {"_id": oid, "status": expected_status.value}
        if creator_id is not None:
            query["creator_id"] = creator_id
        updated = await _db.db.bets.find_one_and_update(
            query,
            {"$set": {**set_fields, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is not None:
            return updated

        current = await _db.db.bets.find_one({"_id": oid}, session=session)
        if current is None:
            raise BetNotFoundError("Bet not found.", id=str(bet_id))
        if creator_id is not None and current.get("creator_id") != creator_id:
            raise BetPermissionError("Only the creator can change this bet.")
        raise BetConflictError(
            "The bet is no longer in the expected state.",
            bet_id=str(oid),
            current_status=current.get("status"),
        )

    @_store_call
    async def update_bet_status(
        self,
        bet_id: Any,
        new_status: BetStatus,
        expected_status: Optional[BetStatus] = None,
        *,
        extra_fields: Optional[dict] = None,
        session=None,
    ) -> dict:
        """Move a bet to new_status. Without expected_status the stored one is
        read first and still used as the swap guard."""
        if expected_status is None:
            current = await self.get_bet(bet_id, session=session)
            expected_status = BetStatus(current["status"])
        return await self.update_bet(
            bet_id,
            expected_status=expected_status,
            set_fields={**(extra_fields or {}), "status": new_status.value},
            session=session,
        )

    @_store_call
    async def set_creator_claim(self, bet_id: Any, claim: Optional[str], claimed_at, *, session=None) -> None:
        """Store the creator half of open claims. Not a status change, so unguarded."""
        await _db.db.bets.update_one(
            {"_id": _oid(bet_id, "Bet")},
            {"$set": {
                "creator_pending_outcome": claim,
                "creator_outcome_claimed_at": claimed_at if claim else None,
            }},
            session=session,
        )

    @_store_call
    async def cancel_open_recipients(self, bet_id: Any, *, session=None) -> int:
        """Cascade a bet cancellation onto every pending / in-progress recipient."""
        result = await _db.db.bet_recipients.update_many(
            {
                "bet_id": str(bet_id),
                "status": {"$in": [s.value for s in CANCELLABLE_RECIPIENT_STATUSES]},
            },
            {"$set": {
                "status": RecipientStatus.cancelled.value,
                **_CLEARED_CLAIM,
                "updated_at": utcnow(),
            }},
            session=session,
        )
        return result.modified_count

    @_store_call
    async def delete_bet(self, bet_id: Any, creator_id: str) -> int:
        """Remove a pending bet and its recipient rows. Returns deleted recipient count."""
        oid = _oid(bet_id, "Bet")
        async with self.transaction() as session:
            answered = await _db.db.bet_recipients.count_documents(
                {
                    "bet_id": str(oid),
                    "status": {"$in": [
                        RecipientStatus.in_progress.value,
                        RecipientStatus.won.value,
                        RecipientStatus.lost.value,
                    ]},
                },
                session=session,
            )
            if answered:
                raise BetConflictError(
                    "Only bets nobody has accepted can be deleted.", bet_id=str(oid),
                )
            result = await _db.db.bets.delete_one(
                {"_id": oid, "creator_id": creator_id, "status": BetStatus.pending.value},
                session=session,
            )
            if result.deleted_count == 0:
                current = await _db.db.bets.find_one({"_id": oid}, session=session)
                if current is None:
                    raise BetNotFoundError("Bet not found.", id=str(oid))
                if current.get("creator_id") != creator_id:
                    raise BetPermissionError("Only the creator can delete this bet.")
                raise BetConflictError(
                    "Only pending bets can be deleted.",
                    bet_id=str(oid),
                    current_status=current.get("status"),
                )
            removed = await _db.db.bet_recipients.delete_many({"bet_id": str(oid)}, session=session)
        logger.info("Bet %s deleted with %d recipient rows", oid, removed.deleted_count)
        return removed.deleted_count


bet_store = BetStore()
