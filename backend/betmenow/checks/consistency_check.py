"""
backend/betmenow/checks/consistency_check.py

Purpose:
    Read-only integrity check over bets and bet recipients. Counts status
    drift (stored bet status differing from the effective status), orphaned
    recipient rows, running duels on bets that never started, and creator
    claim halves that no longer match the open recipient claims.

Dependencies:
    - betmenow.database
    - betmenow.services.bet_lifecycle
"""

import logging
import traceback
from typing import Any

from pymongo.errors import PyMongoError

import betmenow.database as _db
from betmenow.models.bet import BetStatus, RecipientStatus
from betmenow.services.bet_lifecycle import creator_claim_from, effective_status

logger = logging.getLogger("betmenow.consistency_check")

_SAMPLE_SIZE = 20


def find_inconsistencies(bets: list[dict], recipients: list[dict]) -> dict[str, list[dict]]:
    """Group problems by kind. Each entry identifies the offending document."""
    by_bet: dict[str, list[dict]] = {}
    for row in recipients:
        by_bet.setdefault(row["bet_id"], []).append(row)
    known = {str(b["_id"]) for b in bets}

    issues: dict[str, list[dict]] = {
        "status_drift": [],
        "orphaned_recipients": [],
        "unstarted_with_running_duel": [],
        "creator_claim_mismatch": [],
    }
    for bet in bets:
        bet_id = str(bet["_id"])
        rows = by_bet.get(bet_id, [])
        effective = effective_status(bet, rows)
        if effective.value != bet["status"]:
            issues["status_drift"].append(
                {"bet_id": bet_id, "stored": bet["status"], "effective": effective.value}
            )
        if bet["status"] == BetStatus.pending.value and any(
            r["status"] == RecipientStatus.in_progress.value for r in rows
        ):
            issues["unstarted_with_running_duel"].append({"bet_id": bet_id})
        expected_claim = creator_claim_from(rows)
        stored_claim = bet.get("creator_pending_outcome")
        if (expected_claim.value if expected_claim else None) != stored_claim:
            issues["creator_claim_mismatch"].append({
                "bet_id": bet_id,
                "stored": stored_claim,
                "expected": expected_claim.value if expected_claim else None,
            })

    for bet_id, rows in by_bet.items():
        if bet_id not in known:
            issues["orphaned_recipients"].extend(
                {"recipient_id": str(r["_id"]), "bet_id": bet_id} for r in rows
            )
    return issues


class BetConsistencyCheck:
    """Health report for the bet collections."""

    @staticmethod
    async def run() -> dict[str, Any]:
        report: dict[str, Any] = {
            "status": "UNKNOWN",
            "steps": {"database": "PENDING", "scan": "PENDING"},
            "details": {},
            "error": None,
        }
        try:
            if _db.db is None:
                raise RuntimeError("Database is not initialized. Call connect_db() first.")

            await _db.db.command("ping")
            report["steps"]["database"] = "OK"

            bets = await _db.db.bets.find({}).to_list(length=None)
            recipients = await _db.db.bet_recipients.find({}).to_list(length=None)
            issues = find_inconsistencies(bets, recipients)
            report["steps"]["scan"] = "OK"
            report["details"]["bets_scanned"] = len(bets)
            report["details"]["recipients_scanned"] = len(recipients)
            report["details"]["counts"] = {kind: len(found) for kind, found in issues.items()}
            report["details"]["samples"] = {
                kind: found[:_SAMPLE_SIZE] for kind, found in issues.items() if found
            }
            report["status"] = "HEALTHY" if not any(issues.values()) else "DEGRADED"
            if report["status"] == "DEGRADED":
                logger.warning("Bet consistency check found issues: %s", report["details"]["counts"])

        except (PyMongoError, RuntimeError) as e:
            report["status"] = "CRITICAL"
            report["error"] = str(e)
            report["traceback"] = traceback.format_exc()
            logger.error("Bet consistency check failed: %s", e, exc_info=True)

        return report
