# model/orders.py
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .orm import ORDER_PENDING, Order, OrderTimeline

ORDER_COLUMNS = """
    id, requester_id, event_id, tier_id, hold_id, quantity, processor,
    processor_txn_id, status, subtotal, fee, amount, currency, created_at,
    updated_at, paid_at
"""


# ------------------------------------------------------------------------------
# UN-GATED helpers
# ------------------------------------------------------------------------------

def _append_timeline(
    session: AsyncSession, order_id: str, status: str, note: str, now: float
) -> None:
    session.add(OrderTimeline(order_id=order_id, at=now, status=status,
                              note=note))


async def _transition(
    session: AsyncSession,
    order_id: str,
    from_statuses: Iterable[str],
    to_status: str,
    note: str,
    now: float,
    *,
    paid: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Guarded status change plus a timeline entry. Returns the updated order,
    or None when the order was not in one of ``from_statuses`` (replay or
    out-of-order delivery).
    """
    stmt = text(f"""
        UPDATE orders
        SET status=:to, updated_at=:now
            {", paid_at=:now" if paid else ""}
        WHERE id=:id AND status IN :from_statuses
        RETURNING {ORDER_COLUMNS}
    """).bindparams(bindparam("from_statuses", expanding=True))
    row = (await session.execute(stmt, {
        "to": to_status,
        "now": now,
        "id": order_id,
        "from_statuses": list(from_statuses),
    })).mappings().first()
    if row is None:
        return None
    _append_timeline(session, order_id, to_status, note, now)
    return dict(row)


async def _claim(
    session: AsyncSession,
    order_id: str,
    statuses: Iterable[str],
    now: float,
) -> Optional[Dict[str, Any]]:
    """
    Touch the order only if it is in one of ``statuses``. On Postgres the
    row stays locked until the transaction ends, so a concurrent delivery
    of the same event waits here and then finds the status already moved
    on.
    """
    stmt = text(f"""
        UPDATE orders SET updated_at=:now
        WHERE id=:id AND status IN :statuses
        RETURNING {ORDER_COLUMNS}
    """).bindparams(bindparam("statuses", expanding=True))
    row = (await session.execute(stmt, {
        "id": order_id, "statuses": list(statuses), "now": now,
    })).mappings().first()
    return dict(row) if row else None


async def _get_by_txn(
    session: AsyncSession, txn_id: str
) -> Optional[Dict[str, Any]]:
    row = (await session.execute(text(f"""
        SELECT {ORDER_COLUMNS} FROM orders WHERE processor_txn_id=:t
    """), {"t": txn_id})).mappings().first()
    return dict(row) if row else None


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create_pending(
    db: GatedAsyncSession, order: Dict[str, Any]
) -> Dict[str, Any]:
    now = order.get("created_at") or now_ts()
    row = dict(order)
    row.setdefault("status", ORDER_PENDING)
    row.setdefault("processor_txn_id", None)
    row.setdefault("paid_at", None)
    row["created_at"] = now
    row["updated_at"] = now
    async with db.gated():
        async with db.session.begin():
            db.session.add(Order(**row))
            _append_timeline(db.session, row["id"], row["status"],
                             "Order created", now)
    return row


async def attach_processor_txn(
    db: GatedAsyncSession, order_id: str, txn_id: str
) -> bool:
    """False when the order already carries a transaction id."""
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(text("""
                UPDATE orders SET processor_txn_id=:t, updated_at=:now
                WHERE id=:id AND processor_txn_id IS NULL
            """), {"t": txn_id, "now": now, "id": order_id})
            if res.rowcount == 0:
                return False
            _append_timeline(db.session, order_id, ORDER_PENDING,
                             f"Processor transaction {txn_id} opened", now)
    return True


async def get(db: GatedAsyncSession, order_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM orders WHERE id=:id
            """), {"id": order_id})).mappings().first()
    return dict(row) if row else None


async def get_for_hold(
    db: GatedAsyncSession, hold_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM orders WHERE hold_id=:h
            """), {"h": hold_id})).mappings().first()
    return dict(row) if row else None


async def get_by_txn(
    db: GatedAsyncSession, txn_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _get_by_txn(db.session, txn_id)


async def timeline(db: GatedAsyncSession, order_id: str) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT at, status, note FROM order_timeline
                WHERE order_id=:o ORDER BY at, id
            """), {"o": order_id})).mappings().all()
    return [dict(r) for r in rows]


async def list_stale_pending(
    db: GatedAsyncSession, older_than: float, limit: int = 50
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM orders
                WHERE status='payment_pending' AND created_at < :cutoff
                ORDER BY created_at
                LIMIT :lim
            """), {"cutoff": older_than, "lim": int(limit)})).mappings().all()
    return [dict(r) for r in rows]


async def list_recent(
    db: GatedAsyncSession, limit: int = 200
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM orders
                ORDER BY created_at DESC
                LIMIT :lim
            """), {"lim": max(1, min(limit, 500))})).mappings().all()
    return [dict(r) for r in rows]
