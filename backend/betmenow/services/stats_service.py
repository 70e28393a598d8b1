"""
backend/betmenow/services/stats_service.py

Purpose:
    Per-user bet statistics and the global leaderboard. Results are derived
    from bets and recipient records on every call; nothing is materialised.
    The creator's result in a duel is the complement of the recipient's.

Dependencies:
    - betmenow.database
    - betmenow.services.bet_lifecycle
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

import betmenow.database as _db
from betmenow.config import settings
from betmenow.models.bet import BetStatus, Outcome, RecipientStatus
from betmenow.services.bet_lifecycle import creator_outcome_for, effective_status
from betmenow.services.bet_store import bet_store
from betmenow.utils import parse_object_id, utcnow


class LeaderboardSort(str, Enum):
    score = "score"
    win_percentage = "win_percentage"
    net_winnings = "net_winnings"
    total_bets = "total_bets"


class LeaderboardPeriod(str, Enum):
    all_time = "all_time"
    this_month = "this_month"
    this_week = "this_week"


_COUNTED = ("won", "lost", "in_progress", "pending")
_CENT = Decimal("0.01")


def period_start(period: LeaderboardPeriod, now: Optional[datetime] = None) -> Optional[datetime]:
    """Lower bound on bet creation time for a leaderboard period (weeks start Monday)."""
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == LeaderboardPeriod.this_month:
        return midnight.replace(day=1)
    if period == LeaderboardPeriod.this_week:
        return midnight - timedelta(days=midnight.weekday())
    return None


def _creator_result(bet: dict, recipients: list[dict]) -> Optional[str]:
    outcomes = {creator_outcome_for(r["status"]) for r in recipients}
    if Outcome.won in outcomes:
        return "won"
    if Outcome.lost in outcomes:
        return "lost"
    status = effective_status(bet, recipients)
    if status in (BetStatus.pending, BetStatus.in_progress):
        return status.value
    return None


def _recipient_result(record: dict) -> Optional[str]:
    status = record["status"]
    if status in (
        RecipientStatus.won.value,
        RecipientStatus.lost.value,
        RecipientStatus.in_progress.value,
        RecipientStatus.pending.value,
    ):
        return status
    return None


def _cents(stake: Any) -> Decimal:
    # str() keeps the decimal digits the stake was entered with
    return Decimal(str(stake)).quantize(_CENT)


def tally_user(user_id: str, bets: Iterable[dict], recipients_by_bet: dict[str, list[dict]]) -> dict[str, Any]:
    """Aggregate one user's bets, from the creator side or their own recipient record."""
    counts = {key: 0 for key in _COUNTED}
    stake_won = stake_lost = Decimal(0)
    created = received = 0

    for bet in bets:
        rows = recipients_by_bet.get(str(bet["_id"]), [])
        if bet["creator_id"] == user_id:
            created += 1
            result = _creator_result(bet, rows)
        else:
            record = next((r for r in rows if r["recipient_id"] == user_id), None)
            if record is None:
                continue
            received += 1
            result = _recipient_result(record)
        if result is None:
            continue
        counts[result] += 1
        if result == "won":
            stake_won += _cents(bet["stake"])
        elif result == "lost":
            stake_lost += _cents(bet["stake"])

    decided = counts["won"] + counts["lost"]
    return {
        "user_id": user_id,
        "total_bets": created + received,
        "bets_created": created,
        "bets_received": received,
        **counts,
        "win_percentage": round(counts["won"] / decided * 100, 2) if decided else 0.0,
        "stake_won": float(stake_won),
        "stake_lost": float(stake_lost),
        "net_winnings": float(stake_won - stake_lost),
    }


def leaderboard_score(stats: dict[str, Any]) -> float:
    """Weighted 0-100 ranking score from win rate, positive net winnings and activity."""
    win_rate = stats["win_percentage"] / 100
    winnings = min(max(stats["net_winnings"], 0) / settings.LEADERBOARD_NET_WINNINGS_BENCHMARK, 1)
    activity = min(stats["total_bets"] / settings.LEADERBOARD_ACTIVITY_BENCHMARK, 1)
    return round(100 * (
        settings.LEADERBOARD_WIN_RATE_WEIGHT * win_rate
        + settings.LEADERBOARD_NET_WINNINGS_WEIGHT * winnings
        + settings.LEADERBOARD_ACTIVITY_WEIGHT * activity
    ), 2)


async def user_stats(user_id: str) -> dict[str, Any]:
    created = await _db.db.bets.find({"creator_id": user_id}).to_list(length=None)
    rows = await _db.db.bet_recipients.find(
        {"recipient_id": user_id}, {"bet_id": 1},
    ).to_list(length=None)
    received_ids = [oid for oid in (parse_object_id(r["bet_id"]) for r in rows) if oid]
    received = await _db.db.bets.find({"_id": {"$in": received_ids}}).to_list(length=None)

    bets = created + received
    grouped = await bet_store.list_recipients_for_bets([str(b["_id"]) for b in bets])
    return tally_user(user_id, bets, grouped)


def rank_entries(
    users: list[dict],
    bets: list[dict],
    recipients_by_bet: dict[str, list[dict]],
    sort: LeaderboardSort = LeaderboardSort.score,
) -> list[dict[str, Any]]:
    """Leaderboard rows for users with at least one bet, best first."""
    by_user: dict[str, list[dict]] = {}
    for bet in bets:
        participants = {bet["creator_id"]}
        participants.update(r["recipient_id"] for r in recipients_by_bet.get(str(bet["_id"]), []))
        for uid in participants:
            by_user.setdefault(uid, []).append(bet)

    entries = []
    for user in users:
        uid = str(user["_id"])
        stats = tally_user(uid, by_user.get(uid, []), recipients_by_bet)
        if not stats["total_bets"]:
            continue
        entries.append({
            **stats,
            "username": user.get("username", ""),
            "display_name": user.get("display_name") or user.get("username", ""),
            "score": leaderboard_score(stats),
        })

    entries.sort(key=lambda e: (e[sort.value], e["score"]), reverse=True)
    for i, entry in enumerate(entries):
        entry["rank"] = i + 1
    return entries


async def leaderboard(
    sort: LeaderboardSort = LeaderboardSort.score,
    period: LeaderboardPeriod = LeaderboardPeriod.all_time,
    search: Optional[str] = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    bet_query: dict[str, Any] = {}
    since = period_start(period)
    if since is not None:
        bet_query["created_at"] = {"$gte": since}
    bets = await _db.db.bets.find(bet_query).to_list(length=None)
    grouped = await bet_store.list_recipients_for_bets([str(b["_id"]) for b in bets])

    # Only people with a bet in the period can rank
    participants = {b["creator_id"] for b in bets}
    participants.update(r["recipient_id"] for rows in grouped.values() for r in rows)
    user_query: dict[str, Any] = {
        "_id": {"$in": [oid for oid in map(parse_object_id, participants) if oid]},
        "is_deleted": False,
    }
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        user_query["$or"] = [{"username": pattern}, {"display_name": pattern}]
    users = await _db.db.users.find(
        user_query, {"username": 1, "display_name": 1},
    ).to_list(length=None)

    return rank_entries(users, bets, grouped, sort)[:limit]
