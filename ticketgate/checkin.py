"""
Door scanning.

scan() never raises for an expected outcome: every result, including a
forged or already used token, comes back as a ScanResult, and every call
appends exactly one checkins row. The active -> scanned transition is a
single conditional UPDATE, so of two scanners racing on one ticket
exactly one sees success and the other already_scanned.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .model.orm import (
    TICKET_EXPIRED, TICKET_REVOKED, TICKET_SCANNED, Checkin,
)
from .signer import REASON_INVALID_SIGNATURE, TicketSigner

log = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    ALREADY_SCANNED = "already_scanned"
    INVALID_SIGNATURE = "invalid_signature"
    PARSE_ERROR = "parse_error"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    WRONG_EVENT = "wrong_event"


_STATUS_OUTCOME = {
    TICKET_SCANNED: Outcome.ALREADY_SCANNED,
    TICKET_REVOKED: Outcome.REVOKED,
    TICKET_EXPIRED: Outcome.EXPIRED,
}


@dataclass(frozen=True)
class ScanResult:
    outcome: Outcome
    ticket_id: Optional[str] = None
    holder_display_name: Optional[str] = None
    checked_in_at: Optional[float] = None


def _record(
    session: AsyncSession,
    outcome: Outcome,
    scanner_id: str,
    now: float,
    ticket_id: Optional[str] = None,
    event_id: Optional[str] = None,
    device_id: Optional[str] = None,
) -> None:
    session.add(Checkin(
        ticket_id=ticket_id,
        event_id=event_id,
        scanner_id=scanner_id,
        device_id=device_id,
        outcome=outcome.value,
        scanned_at=now,
    ))


async def _redeem(
    session: AsyncSession, ticket_id: str, scanner_id: str, now: float
) -> ScanResult:
    row = (await session.execute(text("""
        UPDATE tickets
        SET status='scanned', checked_in_at=:now, checked_in_by=:by
        WHERE id=:id AND status='active'
        RETURNING id, holder_name, checked_in_at
    """), {"id": ticket_id, "by": scanner_id, "now": now})).first()
    if row is not None:
        return ScanResult(Outcome.SUCCESS, ticket_id=row[0],
                          holder_display_name=row[1], checked_in_at=row[2])

    # lost the race, or was never active
    row = (await session.execute(text("""
        SELECT status, checked_in_at FROM tickets WHERE id=:id
    """), {"id": ticket_id})).first()
    if row is None:
        return ScanResult(Outcome.NOT_FOUND)
    outcome = _STATUS_OUTCOME.get(row[0], Outcome.NOT_FOUND)
    return ScanResult(outcome, ticket_id=ticket_id, checked_in_at=row[1])


async def scan(
    db: GatedAsyncSession,
    signer: TicketSigner,
    token: str,
    scanner_id: str,
    *,
    event_id: Optional[str] = None,
    device_id: Optional[str] = None,
    now: Optional[float] = None,
) -> ScanResult:
    now = now_ts() if now is None else now
    v = signer.verify(token)

    async with db.gated():
        async with db.session.begin():
            if not v.valid:
                outcome = (Outcome.INVALID_SIGNATURE
                           if v.reason == REASON_INVALID_SIGNATURE
                           else Outcome.PARSE_ERROR)
                res = ScanResult(outcome)
                _record(db.session, outcome, scanner_id, now,
                        event_id=event_id, device_id=device_id)
            elif event_id is not None and v.event_id != event_id:
                res = ScanResult(Outcome.WRONG_EVENT, ticket_id=v.ticket_id)
                _record(db.session, res.outcome, scanner_id, now,
                        ticket_id=v.ticket_id, event_id=v.event_id,
                        device_id=device_id)
            else:
                res = await _redeem(db.session, v.ticket_id, scanner_id, now)
                _record(db.session, res.outcome, scanner_id, now,
                        ticket_id=v.ticket_id, event_id=v.event_id,
                        device_id=device_id)

    log.info("scan by %s: %s ticket=%s", scanner_id, res.outcome.value,
             res.ticket_id)
    return res


async def history(db: GatedAsyncSession, ticket_id: str) -> list:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT ticket_id, event_id, scanner_id, device_id, outcome,
                       scanned_at
                FROM checkins WHERE ticket_id=:t ORDER BY id
            """), {"t": ticket_id})).mappings().all()
    return [dict(r) for r in rows]
