"""
backend/betmenow/services/payment_service.py

Purpose:
    Settle-up deep links for the loser of a bet. Links are a convenience
    only: failure to build one never affects a lifecycle transition.

Dependencies:
    - betmenow.database
    - urllib.parse
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote, urlencode

from pymongo.errors import PyMongoError

import betmenow.database as _db
from betmenow.config import settings
from betmenow.utils import parse_object_id

logger = logging.getLogger("betmenow.payment")

_NOTE_MAX_LENGTH = 120


def build_payment_link(handle: Optional[str], amount: float, note: str) -> Optional[str]:
    """Pay-request URL for `handle`, or None when no usable handle exists."""
    if not settings.PAYMENT_LINK_ENABLED:
        return None
    handle = (handle or "").strip().lstrip("@")
    if not handle or amount <= 0:
        return None
    query = urlencode(
        {
            "txn": "pay",
            "recipients": handle,
            "amount": f"{amount:.2f}",
            "note": note[:_NOTE_MAX_LENGTH],
        },
        quote_via=quote,
    )
    return f"{settings.PAYMENT_LINK_SCHEME}?{query}"


async def payment_link_for(winner_id: str, amount: float, description: str) -> Optional[str]:
    """Link paying `amount` to the winner. Lookup failures are logged, not raised."""
    oid = parse_object_id(winner_id)
    if oid is None:
        return None
    try:
        winner = await _db.db.users.find_one({"_id": oid}, {"venmo_username": 1})
    except PyMongoError:
        logger.warning("Payment handle lookup failed for user %s", winner_id, exc_info=True)
        return None
    if not winner:
        return None
    return build_payment_link(winner.get("venmo_username"), amount, f"Bet: {description}")
