"""
backend/tests/test_bet_store.py

Purpose:
    Compare-and-swap semantics of BetStore: failed swaps are classified into
    not-found / not-permitted / conflict, illegal edges are refused before a
    write, and driver failures map onto the bet error taxonomy.
"""

from __future__ import annotations

import pytest
from bson import ObjectId
from pymongo.errors import ConnectionFailure, OperationFailure

from betmenow.models.bet import BetStatus, RecipientStatus
from betmenow.services.bet_errors import (
    BetConflictError,
    BetNotFoundError,
    BetPermissionError,
    BetStoreUnavailableError,
)
from betmenow.services.bet_store import bet_store
from betmenow.utils import utcnow


async def _seed(fake_db):
    bet, recipients = await bet_store.create_bet(
        description="Who finishes the marathon first",
        stake=25.0,
        due_date=utcnow(),
        visibility="private",
        creator_id="creator-1",
        recipient_ids=["friend-1", "friend-2"],
    )
    return bet, recipients


@pytest.mark.asyncio
async def test_create_bet_links_recipient_rows(fake_db):
    bet, recipients = await _seed(fake_db)

    assert bet["status"] == "pending"
    assert bet["creator_pending_outcome"] is None
    assert [r["bet_id"] for r in recipients] == [str(bet["_id"])] * 2
    assert all(isinstance(r["_id"], ObjectId) for r in recipients)
    assert fake_db.transactions == 1


@pytest.mark.asyncio
async def test_recipient_swap_succeeds_from_expected_status(fake_db):
    _, recipients = await _seed(fake_db)
    row = await bet_store.update_recipient_status(
        recipients[0]["_id"],
        RecipientStatus.pending,
        RecipientStatus.in_progress,
        actor_filter={"recipient_id": "friend-1"},
    )
    assert row["status"] == "in_progress"
    assert row["updated_at"] is not None


@pytest.mark.asyncio
async def test_recipient_swap_wrong_prior_status_is_conflict(fake_db):
    _, recipients = await _seed(fake_db)
    await bet_store.update_recipient_status(
        recipients[0]["_id"], RecipientStatus.pending, RecipientStatus.rejected,
    )

    with pytest.raises(BetConflictError) as exc:
        await bet_store.update_recipient_status(
            recipients[0]["_id"], RecipientStatus.pending, RecipientStatus.in_progress,
        )
    assert exc.value.context["current_status"] == "rejected"


@pytest.mark.asyncio
async def test_recipient_swap_by_other_user_is_forbidden(fake_db):
    _, recipients = await _seed(fake_db)
    with pytest.raises(BetPermissionError):
        await bet_store.update_recipient_status(
            recipients[0]["_id"],
            RecipientStatus.pending,
            RecipientStatus.in_progress,
            actor_filter={"recipient_id": "friend-2"},
        )
    assert fake_db.bet_recipients.docs[0]["status"] == "pending"


@pytest.mark.asyncio
@pytest.mark.parametrize("recipient_id", [str(ObjectId()), "not-an-id", None])
async def test_recipient_swap_unknown_row_is_not_found(fake_db, recipient_id):
    with pytest.raises(BetNotFoundError):
        await bet_store.update_recipient_status(
            recipient_id, RecipientStatus.pending, RecipientStatus.in_progress,
        )


@pytest.mark.asyncio
async def test_illegal_edge_refused_without_write(fake_db):
    _, recipients = await _seed(fake_db)
    with pytest.raises(BetConflictError):
        await bet_store.update_recipient_status(
            recipients[0]["_id"], RecipientStatus.pending, RecipientStatus.won,
        )
    assert fake_db.bet_recipients.docs[0]["status"] == "pending"
    assert fake_db.bet_recipients.docs[0]["updated_at"] is None


@pytest.mark.asyncio
async def test_guard_blocks_second_claim(fake_db):
    _, recipients = await _seed(fake_db)
    rid = recipients[0]["_id"]
    await bet_store.update_recipient_status(rid, RecipientStatus.pending, RecipientStatus.in_progress)
    await bet_store.update_recipient_status(
        rid, RecipientStatus.in_progress, RecipientStatus.in_progress,
        {"pending_outcome": "won", "outcome_claimed_by": "friend-1"},
        guard={"pending_outcome": None},
    )

    with pytest.raises(BetConflictError) as exc:
        await bet_store.update_recipient_status(
            rid, RecipientStatus.in_progress, RecipientStatus.in_progress,
            {"pending_outcome": "lost", "outcome_claimed_by": "creator-1"},
            guard={"pending_outcome": None},
        )
    assert exc.value.context["pending_outcome"] == "won"


@pytest.mark.asyncio
async def test_update_bet_status_reads_current_when_not_given(fake_db):
    bet, _ = await _seed(fake_db)
    updated = await bet_store.update_bet_status(bet["_id"], BetStatus.in_progress)
    assert updated["status"] == "in_progress"

    with pytest.raises(BetConflictError):
        await bet_store.update_bet_status(bet["_id"], BetStatus.pending)


@pytest.mark.asyncio
async def test_update_bet_classifies_failures(fake_db):
    bet, _ = await _seed(fake_db)

    with pytest.raises(BetPermissionError):
        await bet_store.update_bet(
            bet["_id"], expected_status=BetStatus.pending,
            set_fields={"stake": 1.0}, creator_id="friend-1",
        )
    with pytest.raises(BetConflictError):
        await bet_store.update_bet(
            bet["_id"], expected_status=BetStatus.in_progress, set_fields={"stake": 1.0},
        )
    with pytest.raises(BetNotFoundError):
        await bet_store.get_bet(ObjectId())


@pytest.mark.asyncio
async def test_cancel_open_recipients_skips_rejected(fake_db):
    bet, recipients = await _seed(fake_db)
    await bet_store.update_recipient_status(
        recipients[1]["_id"], RecipientStatus.pending, RecipientStatus.rejected,
    )
    cancelled = await bet_store.cancel_open_recipients(bet["_id"])

    assert cancelled == 1
    statuses = [r["status"] for r in await bet_store.list_recipients(bet["_id"])]
    assert statuses == ["cancelled", "rejected"]


@pytest.mark.asyncio
async def test_store_call_maps_connection_failure(fake_db):
    fake_db.bets.fail_on["find_one"] = ConnectionFailure("no primary")
    with pytest.raises(BetStoreUnavailableError) as exc:
        await bet_store.get_bet(ObjectId())
    assert exc.value.retryable is True
    assert exc.value.to_dict()["retryable"] is True


@pytest.mark.asyncio
async def test_transient_transaction_error_becomes_conflict(fake_db):
    with pytest.raises(BetConflictError):
        async with bet_store.transaction():
            raise OperationFailure(
                "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]},
            )


@pytest.mark.asyncio
async def test_other_operation_failures_propagate(fake_db):
    with pytest.raises(OperationFailure):
        async with bet_store.transaction():
            raise OperationFailure("Unauthorized", code=13)
    assert fake_db.rollbacks == 1


@pytest.mark.asyncio
async def test_list_recipients_for_bets_groups_by_bet(fake_db):
    first, _ = await _seed(fake_db)
    second, _ = await _seed(fake_db)

    grouped = await bet_store.list_recipients_for_bets([str(first["_id"]), str(second["_id"])])
    assert {k: len(v) for k, v in grouped.items()} == {str(first["_id"]): 2, str(second["_id"]): 2}
    assert await bet_store.list_recipients_for_bets([]) == {}
