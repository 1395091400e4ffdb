"""
Reconciliation sweep.

    python -m ticketgate.reconciler --once
    python -m ticketgate.reconciler --interval 900

Each pass:
  1) flips active holds past expires_at to expired (tidiness only;
     capacity reads already ignore them)
  2) asks the processor about orders stuck in payment_pending longer than
     STALE_ORDER_SECONDS and applies the webhook transitions itself
  3) expires active tickets of events that have ended

Every step goes through the same guarded transitions as the request
handlers, so concurrent sweeps are safe.
"""
from __future__ import annotations
import argparse
import asyncio
import logging
import os
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import fulfillment
from .helpers import now_ts
from .infra.sql import Gated, GatedAsyncSession
from .infra.timings import timeit
from .mockpay import (
    TXN_CANCELED, TXN_FAILED, TXN_REFUNDED, TXN_SUCCEEDED, PaymentAdapter,
)
from .model import ledger, orders, tickets
from .signer import TicketSigner

log = logging.getLogger(__name__)

STALE_ORDER_SECONDS = int(os.getenv("STALE_ORDER_SECONDS", str(2 * 3600)))
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "50"))


async def _reconcile_order(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    signer: TicketSigner,
    order: Dict,
    now: float,
) -> Optional[str]:
    """Returns 'reconciled', 'failed' or None (left pending)."""
    if not order["processor_txn_id"]:
        res = await fulfillment.apply_failure(
            db, order["id"], now=now,
            note="No processor transaction was opened; failed by "
                 "reconciliation",
        )
        return "failed" if res.applied else None

    async with timeit("processor.retrieve"):
        txn = await adapter.retrieve(order["processor_txn_id"])
    status = txn["status"]
    if status == TXN_SUCCEEDED:
        res = await fulfillment.apply_success(
            db, signer, order["id"], amount=txn["amount"], now=now,
            note="Payment reconciled; webhook may have been missed",
        )
        return "reconciled" if res.applied else None
    if status in (TXN_FAILED, TXN_CANCELED, TXN_REFUNDED):
        res = await fulfillment.apply_failure(
            db, order["id"], now=now,
            note=f"Payment {status} (caught by reconciliation)",
        )
        return "failed" if res.applied else None
    return None


async def sweep(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    signer: TicketSigner,
    *,
    now: Optional[float] = None,
    stale_seconds: int = STALE_ORDER_SECONDS,
    limit: int = RECONCILE_BATCH_SIZE,
) -> Dict[str, int]:
    now = now_ts() if now is None else now
    stats = {"expired_holds": 0, "reconciled": 0, "failed": 0,
             "expired_tickets": 0, "errors": 0}

    expired = await ledger.expire_stale_holds(db, now=now)
    stats["expired_holds"] = len(expired)

    stale = await orders.list_stale_pending(
        db, older_than=now - stale_seconds, limit=limit
    )
    for order in stale:
        try:
            outcome = await _reconcile_order(db, adapter, signer, order, now)
        except Exception:
            # one bad order must not stall the rest of the batch
            log.exception("reconcile: order %s failed", order["id"])
            stats["errors"] += 1
            continue
        if outcome:
            stats[outcome] += 1
            log.info("reconcile: order %s -> %s", order["id"], outcome)

    stats["expired_tickets"] = await tickets.expire_for_ended_events(
        db, now=now
    )
    log.info("reconcile complete: %s", stats)
    return stats


async def run_forever(
    SessionAsync: async_sessionmaker,
    gated: Gated,
    adapter: PaymentAdapter,
    signer: TicketSigner,
    interval_s: float,
) -> None:
    while True:
        try:
            async with SessionAsync() as session:
                await sweep(GatedAsyncSession(session=session, gated=gated),
                            adapter, signer)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("reconcile sweep failed")
        await asyncio.sleep(interval_s)


async def _main(once: bool, interval: float) -> None:
    from .infra.sql import make_async_engine
    from .mockpay import MockPay
    from .stripepay import StripePay

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise SystemExit("NEED DATABASE_URL")
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    signer = TicketSigner()
    if os.getenv("PAYMENT_PROCESSOR", "mockpay").lower() == "stripe":
        adapter: PaymentAdapter = StripePay()
    else:
        adapter = MockPay(SessionAsync, gated)
    try:
        if once:
            async with SessionAsync() as session:
                db = GatedAsyncSession(session=session, gated=gated)
                print(await sweep(db, adapter, signer))
        else:
            await run_forever(SessionAsync, gated, adapter, signer, interval)
    finally:
        await engine.dispose()


def main():
    ap = argparse.ArgumentParser(description="ticketgate reconciler")
    ap.add_argument("--once", action="store_true",
                    help="Run a single sweep and exit")
    ap.add_argument("--interval", type=float, default=900.0,
                    help="Seconds between sweeps")
    args = ap.parse_args()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(_main(args.once, args.interval))


if __name__ == "__main__":
    main()
