from ticketgate import coordinator, reconciler
from ticketgate.helpers import new_id, now_ts
from ticketgate.model import ledger, orders, tickets
from ticketgate.model.orm import (
    HOLD_EXPIRED, ORDER_FAILED, ORDER_PAID, ORDER_PENDING,
)

STALE = reconciler.STALE_ORDER_SECONDS


async def _open(db, mockpay, signer, make_tier, quantity=1, now=None):
    tier = await make_tier(unit_price=1500)
    hold = (await ledger.reserve(db, tier["id"], "alice", quantity,
                                 now=now)).hold
    res = await coordinator.start_order(db, mockpay, signer, hold["id"],
                                        "alice", now=now)
    return hold, res.order


async def test_lost_success_webhook_is_recovered(
    db, mockpay, signer, make_tier
):
    now = now_ts()
    hold, order = await _open(db, mockpay, signer, make_tier, quantity=2,
                              now=now)
    # the buyer paid, the webhook never arrived
    assert await mockpay.settle(order["processor_txn_id"], "succeeded")

    stats = await reconciler.sweep(db, mockpay, signer, now=now + STALE + 1)
    assert stats["reconciled"] == 1
    assert stats["expired_holds"] == 1
    assert stats["errors"] == 0

    assert (await orders.get(db, order["id"]))["status"] == ORDER_PAID
    assert len(await tickets.list_for_order(db, order["id"])) == 2

    # a second sweep finds nothing left to do
    again = await reconciler.sweep(db, mockpay, signer, now=now + STALE + 2)
    assert again["reconciled"] == 0 and again["failed"] == 0


async def test_failed_payment_is_closed(db, mockpay, signer, make_tier):
    now = now_ts()
    hold, order = await _open(db, mockpay, signer, make_tier, now=now)
    await mockpay.settle(order["processor_txn_id"], "failed")

    stats = await reconciler.sweep(db, mockpay, signer, now=now + STALE + 1)
    assert stats["failed"] == 1
    assert (await orders.get(db, order["id"]))["status"] == ORDER_FAILED
    assert (await ledger.get_hold(db, hold["id"]))["status"] == HOLD_EXPIRED


async def test_pending_and_recent_orders_are_left_alone(
    db, mockpay, signer, make_tier
):
    now = now_ts()
    _, old = await _open(db, mockpay, signer, make_tier, now=now)
    _, recent = await _open(db, mockpay, signer, make_tier, now=now + STALE)
    await mockpay.settle(recent["processor_txn_id"], "succeeded")

    stats = await reconciler.sweep(db, mockpay, signer, now=now + STALE + 1)
    assert stats["reconciled"] == 0 and stats["failed"] == 0
    assert (await orders.get(db, old["id"]))["status"] == ORDER_PENDING
    assert (await orders.get(db, recent["id"]))["status"] == ORDER_PENDING


async def test_order_without_a_transaction_is_failed(
    db, mockpay, signer, make_tier
):
    now = now_ts()
    tier = await make_tier(unit_price=1500)
    hold = (await ledger.reserve(db, tier["id"], "alice", 1, now=now)).hold
    order = await orders.create_pending(db, {
        "id": new_id(), "requester_id": "alice", "event_id": hold["event_id"],
        "tier_id": tier["id"], "hold_id": hold["id"], "quantity": 1,
        "processor": "mockpay", "subtotal": 1500, "fee": 138, "amount": 1638,
        "currency": "usd", "created_at": now,
    })

    stats = await reconciler.sweep(db, mockpay, signer, now=now + STALE + 1)
    assert stats["failed"] == 1
    assert (await orders.get(db, order["id"]))["status"] == ORDER_FAILED


async def test_one_bad_order_does_not_stop_the_sweep(
    db, mockpay, signer, make_tier
):
    now = now_ts()
    _, good = await _open(db, mockpay, signer, make_tier, now=now)
    await mockpay.settle(good["processor_txn_id"], "succeeded")

    tier = await make_tier(unit_price=1500)
    hold = (await ledger.reserve(db, tier["id"], "bob", 1, now=now)).hold
    bad = await orders.create_pending(db, {
        "id": new_id(), "requester_id": "bob", "event_id": hold["event_id"],
        "tier_id": tier["id"], "hold_id": hold["id"], "quantity": 1,
        "processor": "mockpay", "subtotal": 1500, "fee": 138, "amount": 1638,
        "currency": "usd", "created_at": now - 1,
    })
    # the processor has never heard of this transaction
    await orders.attach_processor_txn(db, bad["id"], "mock_vanished")

    stats = await reconciler.sweep(db, mockpay, signer, now=now + STALE + 1)
    assert stats["errors"] == 1
    assert stats["reconciled"] == 1
    assert (await orders.get(db, bad["id"]))["status"] == ORDER_PENDING


async def test_tickets_of_ended_events_expire(
    db, mockpay, signer, make_tier
):
    now = now_ts()
    tier = await make_tier(unit_price=0, ends_at=now + 3600)
    hold = (await ledger.reserve(db, tier["id"], "alice", 2, now=now)).hold
    await coordinator.start_order(db, mockpay, signer, hold["id"], "alice",
                                  now=now)

    stats = await reconciler.sweep(db, mockpay, signer, now=now + 7200)
    assert stats["expired_tickets"] == 2
    statuses = {t["status"] for t in await tickets.list_for_holder(db, "alice")}
    assert statuses == {"expired"}
