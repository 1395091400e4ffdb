"""
Applies payment-processor outcomes to orders, holds and tickets.

Used by the webhook endpoint (``on_event``) and by the reconciler, which
calls the same ``apply_*`` transitions after asking the processor
directly. Every transition is one gated transaction guarded by the
order's current status, so replays and out-of-order deliveries are
no-ops.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .mockpay import (
    KIND_CANCELED, KIND_FAILED, KIND_REFUNDED, KIND_SUCCEEDED,
    ProcessorEvent,
)
from .model import ledger, orders, tickets
from .model.eventlog import EventLog
from .model.orm import (
    HOLD_CONVERTED, ORDER_FAILED, ORDER_PAID, ORDER_PAID_UNFULFILLED,
    ORDER_PENDING, ORDER_REFUNDED,
)
from .signer import TicketSigner

log = logging.getLogger(__name__)

KNOWN_KINDS = (KIND_SUCCEEDED, KIND_FAILED, KIND_CANCELED, KIND_REFUNDED)

# ApplyResult.reason values
R_REPLAY = "replay"
R_DUPLICATE = "duplicate_event"
R_UNKNOWN_ORDER = "unknown_order"
R_IGNORED = "ignored"
R_AMOUNT_MISMATCH = "amount_mismatch"


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    order_status: Optional[str] = None
    tickets: List[Dict[str, Any]] = field(default_factory=list)
    reason: str = ""


async def apply_success(
    db: GatedAsyncSession,
    signer: TicketSigner,
    order_id: str,
    *,
    amount: Optional[int] = None,
    note: str = "Payment captured",
    now: Optional[float] = None,
) -> ApplyResult:
    """
    payment_pending -> paid: convert the hold and issue one signed ticket
    per unit, all in one transaction. A hold that lapsed before the
    payment landed is honoured if capacity still allows it; otherwise the
    order becomes paid_unfulfilled and needs a refund.

    A success that arrives after a payment_failed (the buyer retried with
    another card) is applied too. Its hold was expired by the failure, so
    it always goes through the late-booking path.
    """
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await orders._claim(
                s, order_id, [ORDER_PENDING, ORDER_FAILED], now
            )
            if order is None:
                return ApplyResult(applied=False, reason=R_REPLAY)
            prior = order["status"]

            if amount is not None and amount != order["amount"]:
                log.error(
                    "order %s: processor amount %s != order amount %s; "
                    "not applied", order_id, amount, order["amount"],
                )
                return ApplyResult(applied=False,
                                   order_status=order["status"],
                                   reason=R_AMOUNT_MISMATCH)

            if prior == ORDER_FAILED:
                note = f"{note} after an earlier failure"
            hold = await ledger._convert_hold(s, order["hold_id"], now)
            if hold is None:
                hold = await ledger._get_hold(s, order["hold_id"])
                if (hold is not None and hold["status"] != HOLD_CONVERTED
                        and await ledger._book_immediately(
                            s, hold["tier_id"], hold["quantity"], now)):
                    # no-op when the hold was already flipped to 'expired'
                    await ledger._transition_hold(
                        s, hold["id"], HOLD_CONVERTED, now
                    )
                    note = f"{note} (hold had lapsed; booked late)"
                else:
                    await orders._transition(
                        s, order_id, [prior], ORDER_PAID_UNFULFILLED,
                        "Paid after hold lapsed and tier sold out; "
                        "refund required", now, paid=True,
                    )
                    log.error("order %s paid but unfulfillable", order_id)
                    return ApplyResult(applied=True,
                                       order_status=ORDER_PAID_UNFULFILLED)

            issued = await tickets._issue_tickets(
                s, signer, hold, order_id, now
            )
            await orders._transition(
                s, order_id, [prior], ORDER_PAID,
                f"{note}; {len(issued)} ticket(s) issued", now, paid=True,
            )

    log.info("order %s paid: %d ticket(s) issued", order_id, len(issued))
    return ApplyResult(applied=True, order_status=ORDER_PAID, tickets=issued)


async def apply_failure(
    db: GatedAsyncSession,
    order_id: str,
    *,
    note: str = "Payment failed",
    now: Optional[float] = None,
) -> ApplyResult:
    """payment_pending -> payment_failed and expire the hold right away."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await orders._transition(
                db.session, order_id, [ORDER_PENDING], ORDER_FAILED, note, now
            )
            if order is None:
                return ApplyResult(applied=False, reason=R_REPLAY)
            await ledger._expire_hold(db.session, order["hold_id"], now)
    log.info("order %s failed: %s", order_id, note)
    return ApplyResult(applied=True, order_status=ORDER_FAILED)


async def apply_refund(
    db: GatedAsyncSession,
    order_id: str,
    *,
    note: str = "Payment refunded",
    now: Optional[float] = None,
) -> ApplyResult:
    """paid -> refunded; active tickets of the order are revoked."""
    now = now_ts() if now is None else now
    async with db.gated():
        async with db.session.begin():
            order = await orders._transition(
                db.session, order_id, [ORDER_PAID, ORDER_PAID_UNFULFILLED],
                ORDER_REFUNDED, note, now,
            )
            if order is None:
                return ApplyResult(applied=False, reason=R_REPLAY)
            revoked = await tickets._revoke_for_order(db.session, order_id)
    log.info("order %s refunded: %d ticket(s) revoked", order_id, revoked)
    return ApplyResult(applied=True, order_status=ORDER_REFUNDED)


async def on_event(
    db: GatedAsyncSession,
    eventlog: EventLog,
    signer: TicketSigner,
    evt: ProcessorEvent,
) -> ApplyResult:
    """Apply one verified processor event."""
    if evt.kind not in KNOWN_KINDS:
        log.info("ignoring processor event %s of type %s",
                 evt.event_id, evt.kind)
        return ApplyResult(applied=False, reason=R_IGNORED)

    if await eventlog.seen(evt.event_id):
        log.info("processor event %s already applied", evt.event_id)
        return ApplyResult(applied=False, reason=R_DUPLICATE)

    order = await orders.get_by_txn(db, evt.txn_id)
    if order is None:
        log.warning("processor event %s: no order for transaction %s",
                    evt.event_id, evt.txn_id)
        return ApplyResult(applied=False, reason=R_UNKNOWN_ORDER)

    if evt.kind == KIND_SUCCEEDED:
        res = await apply_success(db, signer, order["id"], amount=evt.amount)
    elif evt.kind == KIND_REFUNDED:
        res = await apply_refund(db, order["id"])
    else:
        label = "Payment failed" if evt.kind == KIND_FAILED \
            else "Payment canceled"
        res = await apply_failure(db, order["id"], note=label)

    if res.reason != R_AMOUNT_MISMATCH:
        # only after the transition committed; a failed apply is retried
        await eventlog.record(evt.event_id, evt.kind, evt.txn_id)
    return res
