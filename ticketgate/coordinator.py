"""Turns an active hold into a purchase attempt."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from .errors import ForbiddenError, NotFoundError, ProcessorError, \
    ValidationError
from .helpers import new_id, now_ts
from .infra.sql import GatedAsyncSession
from .mockpay import PaymentAdapter
from .model import ledger, orders, tickets
from .model.orm import HOLD_ACTIVE, ORDER_PENDING
from .signer import TicketSigner

log = logging.getLogger(__name__)

BUYER_FEE_BPS = int(os.getenv("BUYER_FEE_BPS", "250"))
BUYER_FEE_FIXED = int(os.getenv("BUYER_FEE_FIXED", "100"))  # cents


@dataclass(frozen=True)
class StartOrderResult:
    free: bool
    order: Optional[Dict[str, Any]] = None
    client_params: Optional[Dict[str, Any]] = None
    tickets: List[Dict[str, Any]] = field(default_factory=list)


def quote(unit_price: int, quantity: int) -> Tuple[int, int, int]:
    """(subtotal, fee, amount) in cents; fee is charged per ticket."""
    subtotal = unit_price * quantity
    per_ticket = (unit_price * BUYER_FEE_BPS + 5000) // 10000 + BUYER_FEE_FIXED
    fee = per_ticket * quantity
    return subtotal, fee, subtotal + fee


async def _issue_free(
    db: GatedAsyncSession, signer: TicketSigner, hold_id: str, now: float
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            hold = await ledger._convert_hold(db.session, hold_id, now)
            if hold is None:
                raise ValidationError("hold is no longer active")
            return await tickets._issue_tickets(
                db.session, signer, hold, None, now
            )


async def _open_transaction(
    db: GatedAsyncSession, adapter: PaymentAdapter, order: Dict[str, Any]
) -> StartOrderResult:
    order_id = order["id"]
    try:
        txn = await adapter.create_transaction(
            order["amount"],
            order["currency"],
            {"hold_id": order["hold_id"], "tier_id": order["tier_id"],
             "order_id": order_id},
            idempotency_key=order_id,
        )
    except ProcessorError:
        log.warning("order %s: processor call failed; left pending",
                    order_id, exc_info=True)
        raise

    await orders.attach_processor_txn(db, order_id, txn["txn_id"])
    order["processor_txn_id"] = txn["txn_id"]
    log.info("order %s opened: txn=%s amount=%d %s",
             order_id, txn["txn_id"], order["amount"], order["currency"])
    return StartOrderResult(
        free=False, order=order, client_params=txn["client_params"]
    )


async def _resume(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    order: Dict[str, Any],
    now: float,
) -> StartOrderResult:
    if order["status"] != ORDER_PENDING:
        raise ValidationError(f"order already {order['status']}")
    if order["processor_txn_id"]:
        params = await adapter.client_params(order["processor_txn_id"])
        return StartOrderResult(free=False, order=order, client_params=params)

    # an earlier processor call failed; retry it while the hold stands
    hold = await ledger.get_hold(db, order["hold_id"])
    if hold is None or hold["status"] != HOLD_ACTIVE \
            or hold["expires_at"] <= now:
        raise ValidationError("hold is no longer active")
    return await _open_transaction(db, adapter, order)


async def start_order(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    signer: TicketSigner,
    hold_id: str,
    requester_id: str,
    *,
    now: Optional[float] = None,
) -> StartOrderResult:
    """
    Free tiers: convert the hold and return tickets, no order.
    Paid tiers: order in payment_pending, then a processor transaction for
    the order amount. If the processor call fails the order stays pending;
    calling again for the same hold retries it, and the reconciler fails
    the order once it goes stale.
    """
    now = now_ts() if now is None else now
    hold = await ledger.get_hold(db, hold_id)
    if hold is None:
        raise NotFoundError("hold")
    if hold["requester_id"] != requester_id:
        raise ForbiddenError("hold belongs to another requester")

    existing = await orders.get_for_hold(db, hold_id)
    if existing is not None:
        return await _resume(db, adapter, existing, now)

    if hold["status"] != HOLD_ACTIVE or hold["expires_at"] <= now:
        raise ValidationError("hold is no longer active")

    tier = await ledger.get_tier(db, hold["tier_id"])
    if tier is None:
        raise NotFoundError("tier")

    if tier["unit_price"] == 0:
        issued = await _issue_free(db, signer, hold_id, now)
        log.info("hold %s: %d free ticket(s) issued", hold_id, len(issued))
        return StartOrderResult(free=True, tickets=issued)

    subtotal, fee, amount = quote(tier["unit_price"], hold["quantity"])
    order_id = new_id()
    try:
        order = await orders.create_pending(db, {
            "id": order_id,
            "requester_id": requester_id,
            "event_id": hold["event_id"],
            "tier_id": hold["tier_id"],
            "hold_id": hold_id,
            "quantity": hold["quantity"],
            "processor": adapter.name,
            "subtotal": subtotal,
            "fee": fee,
            "amount": amount,
            "currency": tier["currency"],
            "created_at": now,
        })
    except IntegrityError:
        # a concurrent start_order for the same hold won the insert
        existing = await orders.get_for_hold(db, hold_id)
        if existing is None:
            raise
        return await _resume(db, adapter, existing, now)

    return await _open_transaction(db, adapter, order)
