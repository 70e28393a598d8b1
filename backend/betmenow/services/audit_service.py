"""Insert-only audit trail for bet lifecycle and account events.

Entries are never updated or deleted. Failures are logged and never break
the request that triggered them.
"""

import logging
from typing import Optional

from fastapi import Request

import betmenow.database as _db
from betmenow.models.audit import AuditLog
from betmenow.utils import utcnow

logger = logging.getLogger("betmenow.audit")


def _truncate_ip(ip: str) -> str:
    """Drop the last segment of an IP address.

    IPv4: 10.0.0.17      -> 10.0.0.xxx
    IPv6: fe80::a1b2:3   -> fe80::a1b2:xxx
    """
    if not ip:
        return ""
    if "." in ip:
        parts = ip.split(".")
        if len(parts) != 4:
            return ip
        return ".".join(parts[:3] + ["xxx"])
    if ":" in ip:
        head, _, _ = ip.rpartition(":")
        return f"{head}:xxx" if head else ip
    return ip


def _get_client_ip(request: Optional[Request]) -> str:
    if request is None:
        return ""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


async def log_audit(
    *,
    actor_id: str,
    target_id: str,
    action: str,
    metadata: Optional[dict] = None,
    request: Optional[Request] = None,
) -> None:
    """Append one audit entry.

    Args:
        actor_id: User who acted, or "SYSTEM".
        target_id: Bet id or user id the action applied to.
        action: Identifier such as "BET_CREATED" or "BET_OUTCOME_CONFIRMED".
        metadata: Extra context (prior/new status, stake, recipient record).
        request: Current request, used for the truncated client IP.
    """
    doc = AuditLog(
        timestamp=utcnow(),
        actor_id=actor_id,
        target_id=target_id,
        action=action,
        metadata=metadata or {},
        ip_truncated=_truncate_ip(_get_client_ip(request)),
    ).model_dump()
    try:
        await _db.db.audit_logs.insert_one(doc)
    except Exception:
        logger.exception("Failed to write audit log: action=%s actor=%s", action, actor_id)
