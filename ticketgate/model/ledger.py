# model/ledger.py
"""
Inventory ledger for ticket tiers.

- time-limited holds on tier capacity (reserve)
- hold state machine: active -> converted | expired | cancelled, all
  terminal, every transition a guarded single-statement UPDATE
- remaining capacity is never stored; it is derived inside the same
  transaction that inserts or converts holds:

    available = quantity_total
                - count(tickets WHERE status != 'revoked')
                - sum(holds.quantity WHERE status = 'active'
                                         AND expires_at > now)

Holds past expires_at stop counting immediately, whether or not the
reconciler has flipped them to 'expired' yet.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ErrorCode, ValidationError
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .orm import (
    HOLD_ACTIVE, HOLD_CANCELLED, HOLD_CONVERTED, HOLD_EXPIRED,
    Event, Hold, TicketTier,
)

log = logging.getLogger(__name__)

HOLD_TTL_SECONDS = int(os.getenv("HOLD_TTL_SECONDS", str(10 * 60)))
DEFAULT_MAX_PER_ORDER = int(os.getenv("DEFAULT_MAX_PER_ORDER", "4"))


@dataclass(frozen=True)
class ReserveResult:
    hold: Optional[Dict[str, Any]] = None
    error: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.hold is not None


# ------------------------------------------------------------------------------
# Admin: events and tiers
# ------------------------------------------------------------------------------

async def create_event(
    db: GatedAsyncSession,
    name: str,
    starts_at: Optional[float] = None,
    ends_at: Optional[float] = None,
) -> Dict[str, Any]:
    if not name:
        raise ValidationError("event name is required")
    row = {
        "id": new_id(),
        "name": name,
        "starts_at": starts_at,
        "ends_at": ends_at,
        "created_at": now_ts(),
    }
    async with db.gated():
        async with db.session.begin():
            db.session.add(Event(**row))
    return row


async def create_tier(
    db: GatedAsyncSession,
    event_id: str,
    name: str,
    unit_price: int,
    quantity_total: int,
    currency: str = "usd",
    max_per_order: Optional[int] = None,
    sale_starts_at: Optional[float] = None,
    sale_ends_at: Optional[float] = None,
) -> Dict[str, Any]:
    if quantity_total < 0:
        raise ValidationError("quantity_total cannot be negative")
    if unit_price < 0:
        raise ValidationError("unit_price cannot be negative")
    if max_per_order is None:
        max_per_order = DEFAULT_MAX_PER_ORDER
    if max_per_order < 1:
        raise ValidationError("max_per_order must be at least 1")
    if (sale_starts_at is not None and sale_ends_at is not None
            and sale_ends_at <= sale_starts_at):
        raise ValidationError("sale window ends before it starts")

    row = {
        "id": new_id(),
        "event_id": event_id,
        "name": name,
        "unit_price": int(unit_price),
        "currency": currency.lower(),
        "quantity_total": int(quantity_total),
        "max_per_order": int(max_per_order),
        "sale_starts_at": sale_starts_at,
        "sale_ends_at": sale_ends_at,
        "created_at": now_ts(),
    }
    async with db.gated():
        async with db.session.begin():
            exists = (await db.session.execute(
                text("SELECT 1 FROM events WHERE id=:id"), {"id": event_id}
            )).first()
            if not exists:
                raise ValidationError("unknown event_id")
            db.session.add(TicketTier(**row))
    return row


# ------------------------------------------------------------------------------
# Core logic (UN-GATED, run inside the caller's transaction)
# ------------------------------------------------------------------------------

async def _lock_tier(
    session: AsyncSession, tier_id: str, *, for_update: bool = True
) -> Optional[Dict[str, Any]]:
    """
    Read the tier row with FOR UPDATE so that capacity checks on one tier
    serialize (Postgres). SQLite has no row locks; the single-writer DB
    gate serializes there.
    """
    tiers = TicketTier.__table__
    stmt = select(tiers).where(tiers.c.id == tier_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).mappings().first()
    return dict(row) if row else None


async def _available_units(
    session: AsyncSession, tier: Dict[str, Any], now: float
) -> Dict[str, int]:
    sold = (await session.execute(text("""
        SELECT COUNT(*) FROM tickets
        WHERE tier_id=:t AND status != 'revoked'
    """), {"t": tier["id"]})).scalar_one()

    held = (await session.execute(text("""
        SELECT COALESCE(SUM(quantity),0) FROM holds
        WHERE tier_id=:t AND status='active' AND expires_at > :now
    """), {"t": tier["id"], "now": now})).scalar_one()

    capacity = int(tier["quantity_total"])
    return {
        "capacity": capacity,
        "sold": int(sold),
        "held": int(held),
        "available": capacity - int(sold) - int(held),
    }


async def _requester_active_quantity(
    session: AsyncSession, tier_id: str, requester_id: str, now: float
) -> int:
    held = (await session.execute(text("""
        SELECT COALESCE(SUM(quantity),0) FROM holds
        WHERE tier_id=:t AND requester_id=:r
          AND status='active' AND expires_at > :now
    """), {"t": tier_id, "r": requester_id, "now": now})).scalar_one()
    return int(held)


def _sale_open(tier: Dict[str, Any], now: float) -> bool:
    if tier["sale_starts_at"] is not None and now < tier["sale_starts_at"]:
        return False
    if tier["sale_ends_at"] is not None and now >= tier["sale_ends_at"]:
        return False
    return True


async def _transition_hold(
    session: AsyncSession,
    hold_id: str,
    new_status: str,
    now: float,
    *,
    only_unexpired: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Guarded active -> new_status. Returns the hold row if this call made
    the transition, None if the hold was not active (or had already lapsed
    when ``only_unexpired`` is set).
    """
    where = "id=:id AND status='active'"
    if only_unexpired:
        where += " AND expires_at > :now"
    row = (await session.execute(text(f"""
        UPDATE holds SET status=:s, updated_at=:now
        WHERE {where}
        RETURNING id, tier_id, event_id, requester_id, display_name,
                  quantity, status, created_at, expires_at
    """), {"id": hold_id, "s": new_status, "now": now})).mappings().first()
    return dict(row) if row else None


async def _convert_hold(
    session: AsyncSession, hold_id: str, now: float
) -> Optional[Dict[str, Any]]:
    # Only a live hold converts; a lapsed one has already stopped counting
    # against capacity and may have been taken by someone else.
    return await _transition_hold(
        session, hold_id, HOLD_CONVERTED, now, only_unexpired=True
    )


async def _expire_hold(
    session: AsyncSession, hold_id: str, now: float
) -> Optional[Dict[str, Any]]:
    return await _transition_hold(session, hold_id, HOLD_EXPIRED, now)


async def _get_hold(
    session: AsyncSession, hold_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text("""
        SELECT id, tier_id, event_id, requester_id, display_name, quantity,
               status, created_at, expires_at
        FROM holds WHERE id=:id
    """), {"id": hold_id})).mappings().first()
    return dict(row) if row else None


async def _book_immediately(
    session: AsyncSession, tier_id: str, qty: int, now: float
) -> bool:
    """
    Capacity check for a payment that landed after its hold lapsed. The
    caller issues the tickets in the same transaction when this is True.
    """
    tier = await _lock_tier(session, tier_id)
    if tier is None:
        return False
    avail = await _available_units(session, tier, now)
    return avail["available"] >= qty


# ------------------------------------------------------------------------------
# Public API (gated, one transaction each)
# ------------------------------------------------------------------------------

async def reserve(
    db: GatedAsyncSession,
    tier_id: str,
    requester_id: str,
    quantity: int,
    display_name: Optional[str] = None,
    *,
    now: Optional[float] = None,
    ttl_seconds: int = HOLD_TTL_SECONDS,
) -> ReserveResult:
    """
    Atomically re-check capacity and insert an active hold.
    Returns ReserveResult with either the hold or one of
    validation_error | not_found | sale_closed | over_limit | sold_out.
    """
    if quantity < 1:
        return ReserveResult(error=ErrorCode.VALIDATION_ERROR)
    now = now_ts() if now is None else now

    async with db.gated():
        async with db.session.begin():
            tier = await _lock_tier(db.session, tier_id)
            if tier is None:
                return ReserveResult(error=ErrorCode.NOT_FOUND)
            if not _sale_open(tier, now):
                return ReserveResult(error=ErrorCode.SALE_CLOSED)
            if quantity > tier["max_per_order"]:
                return ReserveResult(error=ErrorCode.OVER_LIMIT)

            mine = await _requester_active_quantity(
                db.session, tier_id, requester_id, now
            )
            if mine + quantity > tier["max_per_order"]:
                return ReserveResult(error=ErrorCode.OVER_LIMIT)

            avail = await _available_units(db.session, tier, now)
            if avail["available"] < quantity:
                return ReserveResult(error=ErrorCode.SOLD_OUT)

            hold = {
                "id": new_id(),
                "tier_id": tier_id,
                "event_id": tier["event_id"],
                "requester_id": requester_id,
                "display_name": display_name,
                "quantity": quantity,
                "status": HOLD_ACTIVE,
                "created_at": now,
                "expires_at": now + ttl_seconds,
                "updated_at": now,
            }
            db.session.add(Hold(**hold))

    log.info("hold %s reserved: tier=%s qty=%d requester=%s",
             hold["id"], tier_id, quantity, requester_id)
    return ReserveResult(hold=hold)


async def release(
    db: GatedAsyncSession, hold_id: str, *, now: Optional[float] = None
) -> bool:
    """Client abandonment: active -> cancelled. False if not active."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            row = await _transition_hold(
                db.session, hold_id, HOLD_CANCELLED, now
            )
    if row:
        log.info("hold %s cancelled", hold_id)
    return row is not None


async def convert(
    db: GatedAsyncSession, hold_id: str, *, now: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    """
    active (and unexpired) -> converted. Returns the converted hold, whose
    quantity is the number of tickets now owed, or None.
    """
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            return await _convert_hold(db.session, hold_id, now)


async def expire(
    db: GatedAsyncSession, hold_id: str, *, now: Optional[float] = None
) -> bool:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            row = await _expire_hold(db.session, hold_id, now)
    return row is not None


async def get_hold(
    db: GatedAsyncSession, hold_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _get_hold(db.session, hold_id)


async def get_tier(
    db: GatedAsyncSession, tier_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text("SELECT * FROM ticket_tiers WHERE id=:id"),
                {"id": tier_id},
            )).mappings().first()
    return dict(row) if row else None


async def expire_stale_holds(
    db: GatedAsyncSession, *, now: Optional[float] = None
) -> List[str]:
    """Eager cleanup: every active hold past expires_at -> expired."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                UPDATE holds SET status='expired', updated_at=:now
                WHERE status='active' AND expires_at <= :now
                RETURNING id
            """), {"now": now})).all()
    return [r[0] for r in rows]


async def compute_inventory(
    db: GatedAsyncSession, tier_id: str, *, now: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            tier = await _lock_tier(db.session, tier_id, for_update=False)
            if tier is None:
                return None
            stats = await _available_units(db.session, tier, now)
    return {
        "tier_id": tier_id,
        "capacity": stats["capacity"],
        "sold": stats["sold"],
        "active_holds": stats["held"],
        "available": stats["available"],
        "sold_out": stats["available"] <= 0,
        "timestamp": to_iso(now),
    }
