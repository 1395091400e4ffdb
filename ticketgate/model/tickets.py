# model/tickets.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from ..signer import TicketSigner
from .orm import TICKET_ACTIVE, Ticket

log = logging.getLogger(__name__)

TICKET_COLUMNS = """
    id, order_id, hold_id, tier_id, event_id, holder_id, holder_name,
    token, status, issued_at, checked_in_at, checked_in_by
"""


# UN-GATED: runs inside the converting transaction
async def _issue_tickets(
    session: AsyncSession,
    signer: TicketSigner,
    hold: Dict[str, Any],
    order_id: Optional[str],
    now: float,
) -> List[Dict[str, Any]]:
    """One signed ticket per unit of the hold."""
    issued = []
    for _ in range(int(hold["quantity"])):
        ticket_id = new_id()
        row = {
            "id": ticket_id,
            "order_id": order_id,
            "hold_id": hold["id"],
            "tier_id": hold["tier_id"],
            "event_id": hold["event_id"],
            "holder_id": hold["requester_id"],
            "holder_name": hold.get("display_name"),
            "token": signer.issue(ticket_id, hold["event_id"], now),
            "status": TICKET_ACTIVE,
            "issued_at": now,
            "checked_in_at": None,
            "checked_in_by": None,
        }
        session.add(Ticket(**row))
        issued.append(row)
    # flush so a failure surfaces inside the caller's transaction
    await session.flush()
    return issued


# UN-GATED
async def _revoke_for_order(session: AsyncSession, order_id: str) -> int:
    rows = (await session.execute(text("""
        UPDATE tickets SET status='revoked'
        WHERE order_id=:o AND status='active'
        RETURNING id
    """), {"o": order_id})).all()
    return len(rows)


async def get_ticket(
    db: GatedAsyncSession, ticket_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                SELECT {TICKET_COLUMNS} FROM tickets WHERE id=:id
            """), {"id": ticket_id})).mappings().first()
    return dict(row) if row else None


async def list_for_holder(
    db: GatedAsyncSession, holder_id: str
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {TICKET_COLUMNS} FROM tickets
                WHERE holder_id=:h
                ORDER BY issued_at DESC
            """), {"h": holder_id})).mappings().all()
    return [dict(r) for r in rows]


async def list_for_order(
    db: GatedAsyncSession, order_id: str
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {TICKET_COLUMNS} FROM tickets
                WHERE order_id=:o
                ORDER BY issued_at
            """), {"o": order_id})).mappings().all()
    return [dict(r) for r in rows]


async def revoke(db: GatedAsyncSession, ticket_id: str) -> bool:
    """Explicit revoke: active -> revoked. False if not active."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE tickets SET status='revoked'
                WHERE id=:id AND status='active'
                RETURNING id
            """), {"id": ticket_id})).first()
    if row:
        log.info("ticket %s revoked", ticket_id)
    return row is not None


async def expire_for_ended_events(
    db: GatedAsyncSession, *, now: Optional[float] = None
) -> int:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                UPDATE tickets SET status='expired'
                WHERE status='active'
                  AND event_id IN (
                    SELECT id FROM events
                    WHERE ends_at IS NOT NULL AND ends_at < :now
                  )
                RETURNING id
            """), {"now": now})).all()
    return len(rows)
