"""
backend/tests/test_stats_service.py

Purpose:
    Per-user tallies, the weighted leaderboard score, ranking order and the
    leaderboard period window.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from betmenow.services import bet_service
from betmenow.services.stats_service import (
    LeaderboardPeriod,
    LeaderboardSort,
    leaderboard,
    leaderboard_score,
    period_start,
    rank_entries,
    tally_user,
    user_stats,
)
from betmenow.utils import utcnow


def _bet(bid, creator, stake, status="completed"):
    return {"_id": bid, "creator_id": creator, "stake": stake, "status": status}


def _row(recipient, status):
    return {"recipient_id": recipient, "status": status}


BETS = [
    _bet("b1", "a", 10.0),
    _bet("b2", "b", 5.0),
    _bet("b3", "a", 3.0, status="pending"),
]
ROWS = {
    "b1": [_row("b", "lost")],
    "b2": [_row("a", "lost")],
    "b3": [_row("c", "pending")],
}


def test_tally_counts_creator_side_as_complement():
    stats = tally_user("a", BETS, ROWS)

    assert stats["total_bets"] == 3
    assert stats["bets_created"] == 2
    assert stats["bets_received"] == 1
    assert (stats["won"], stats["lost"], stats["pending"]) == (1, 1, 1)
    assert stats["win_percentage"] == 50.0
    assert stats["stake_won"] == 10.0
    assert stats["stake_lost"] == 5.0
    assert stats["net_winnings"] == 5.0


def test_tally_ignores_bets_user_is_not_part_of():
    stats = tally_user("z", BETS, ROWS)
    assert stats["total_bets"] == 0
    assert stats["win_percentage"] == 0.0


def test_rejected_and_cancelled_bets_count_but_score_nothing():
    bets = [_bet("x", "a", 4.0, status="rejected")]
    stats = tally_user("a", bets, {"x": [_row("b", "rejected")]})
    assert stats["bets_created"] == 1
    assert stats["won"] == stats["lost"] == stats["pending"] == 0


def test_leaderboard_score_weights():
    assert leaderboard_score({"win_percentage": 50.0, "net_winnings": 500.0, "total_bets": 10}) == 50.0
    # Losses never push the winnings component below zero
    assert leaderboard_score({"win_percentage": 0.0, "net_winnings": -80.0, "total_bets": 40}) == 20.0


def test_rank_entries_orders_and_skips_idle_users():
    users = [{"_id": uid, "username": uid} for uid in ("a", "b", "c", "d")]

    by_score = rank_entries(users, BETS, ROWS)
    assert [(e["username"], e["rank"]) for e in by_score] == [("a", 1), ("b", 2), ("c", 3)]
    assert by_score[0]["display_name"] == "a"

    by_net = rank_entries(users, BETS, ROWS, LeaderboardSort.net_winnings)
    assert [e["username"] for e in by_net] == ["a", "c", "b"]


def test_period_start_boundaries():
    wednesday = datetime(2026, 10, 21, 15, 30, tzinfo=timezone.utc)

    assert period_start(LeaderboardPeriod.this_week, wednesday) == datetime(2026, 10, 19, tzinfo=timezone.utc)
    assert period_start(LeaderboardPeriod.this_month, wednesday) == datetime(2026, 10, 1, tzinfo=timezone.utc)
    assert period_start(LeaderboardPeriod.all_time, wednesday) is None


@pytest.mark.asyncio
async def test_user_stats_and_leaderboard_from_store(fake_db):
    alice = fake_db.add_user("alice")
    bob = fake_db.add_user("bob")
    view = await bet_service.create_bet(
        alice, description="Coin flip", stake=12, due_date=utcnow() + timedelta(days=1),
        recipient_ids=[bob],
    )
    await bet_service.accept_bet(bob, view["id"])
    await bet_service.declare_outcome(bob, view["id"], "lost")

    alice_stats = await user_stats(alice)
    bob_stats = await user_stats(bob)
    assert (alice_stats["won"], alice_stats["net_winnings"]) == (1, 12.0)
    assert (bob_stats["lost"], bob_stats["bets_received"]) == (1, 1)

    board = await leaderboard(period=LeaderboardPeriod.this_week)
    assert [e["username"] for e in board] == ["alice", "bob"]
    assert board[0]["display_name"] == "Alice"

    searched = await leaderboard(search="BO")
    assert [e["username"] for e in searched] == ["bob"]


def test_stake_sums_are_exact_to_the_cent():
    bets = [_bet(f"w{i}", "a", 0.1) for i in range(10)] + [_bet("l1", "a", 0.7), _bet("l2", "a", 0.1)]
    rows = {b["_id"]: [_row("b", "lost")] for b in bets}
    rows["l1"] = rows["l2"] = [_row("b", "won")]

    stats = tally_user("a", bets, rows)
    assert stats["stake_won"] == 1.0
    assert stats["stake_lost"] == 0.8
    assert stats["net_winnings"] == 0.2


@pytest.mark.asyncio
async def test_leaderboard_ranks_participants_behind_many_idle_users(fake_db):
    for i in range(600):
        fake_db.add_user(f"idle_{i:03d}")
    zoe = fake_db.add_user("zoe")
    yan = fake_db.add_user("yan")
    view = await bet_service.create_bet(
        zoe, description="Coin flip", stake=5, due_date=utcnow() + timedelta(days=1),
        recipient_ids=[yan],
    )
    await bet_service.accept_bet(yan, view["id"])
    await bet_service.declare_outcome(yan, view["id"], "lost")

    board = await leaderboard()
    assert [e["username"] for e in board] == ["zoe", "yan"]
