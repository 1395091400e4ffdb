import asyncio

import pytest

from ticketgate import checkin, coordinator, fulfillment
from ticketgate.helpers import now_ts
from ticketgate.mockpay import KIND_SUCCEEDED, ProcessorEvent
from ticketgate.model import ledger, orders, tickets
from ticketgate.model.orm import (
    HOLD_CONVERTED, HOLD_EXPIRED, ORDER_FAILED, ORDER_PAID,
    ORDER_PAID_UNFULFILLED, ORDER_PENDING, ORDER_REFUNDED, TICKET_REVOKED,
    TICKET_SCANNED,
)


@pytest.fixture
def open_order(db, mockpay, signer, make_tier):
    async def _open(quantity=2, quantity_total=10, requester="alice",
                    ttl_seconds=ledger.HOLD_TTL_SECONDS, now=None):
        tier = await make_tier(unit_price=2500, quantity_total=quantity_total)
        hold = (await ledger.reserve(
            db, tier["id"], requester, quantity, requester.title(),
            now=now, ttl_seconds=ttl_seconds,
        )).hold
        res = await coordinator.start_order(
            db, mockpay, signer, hold["id"], requester, now=now
        )
        return tier, hold, res.order
    return _open


async def _deliver(db, evlog, signer, mockpay, order, outcome):
    event = await mockpay.settle(order["processor_txn_id"], outcome)
    evt = mockpay.parse_event(event)
    return evt, await fulfillment.on_event(db, evlog, signer, evt)


async def test_success_issues_one_ticket_per_unit(
    db, evlog, signer, mockpay, open_order
):
    tier, hold, order = await open_order(quantity=2)
    _, res = await _deliver(db, evlog, signer, mockpay, order, "succeeded")

    assert res.applied
    assert res.order_status == ORDER_PAID
    assert len(res.tickets) == 2
    assert (await orders.get(db, order["id"]))["paid_at"] is not None
    assert (await ledger.get_hold(db, hold["id"]))["status"] == HOLD_CONVERTED
    issued = await tickets.list_for_order(db, order["id"])
    assert len(issued) == 2
    assert {t["holder_name"] for t in issued} == {"Alice"}

    inv = await ledger.compute_inventory(db, tier["id"])
    assert inv["sold"] == 2 and inv["active_holds"] == 0


async def test_redelivery_is_a_no_op(db, evlog, signer, mockpay, open_order):
    _, _, order = await open_order(quantity=2)
    evt, first = await _deliver(db, evlog, signer, mockpay, order,
                                "succeeded")
    assert first.applied

    again = await fulfillment.on_event(db, evlog, signer, evt)
    assert not again.applied
    assert again.reason == fulfillment.R_DUPLICATE

    # same outcome under a new event id: the status guard catches it
    fresh = ProcessorEvent(kind=KIND_SUCCEEDED, txn_id=evt.txn_id,
                           amount=evt.amount, event_id="evt_other")
    third = await fulfillment.on_event(db, evlog, signer, fresh)
    assert not third.applied
    assert third.reason == fulfillment.R_REPLAY

    assert len(await tickets.list_for_order(db, order["id"])) == 2


async def test_concurrent_deliveries_issue_tickets_once(
    new_db, signer, open_order
):
    _, _, order = await open_order(quantity=3)
    results = await asyncio.gather(*[
        fulfillment.apply_success(new_db(), signer, order["id"],
                                  amount=order["amount"])
        for _ in range(5)
    ])
    assert sum(1 for r in results if r.applied) == 1
    assert len(await tickets.list_for_order(new_db(), order["id"])) == 3


async def test_failure_releases_the_hold(
    db, evlog, signer, mockpay, open_order
):
    tier, hold, order = await open_order(quantity=2, quantity_total=2)
    _, res = await _deliver(db, evlog, signer, mockpay, order, "failed")

    assert res.applied
    assert (await orders.get(db, order["id"]))["status"] == ORDER_FAILED
    assert (await ledger.get_hold(db, hold["id"]))["status"] == HOLD_EXPIRED
    assert (await ledger.reserve(db, tier["id"], "bob", 2)).ok


async def test_success_after_failure_books_late(
    db, evlog, signer, mockpay, open_order
):
    tier, hold, order = await open_order(quantity=2, quantity_total=10)
    await _deliver(db, evlog, signer, mockpay, order, "failed")
    _, res = await _deliver(db, evlog, signer, mockpay, order, "succeeded")

    assert res.applied
    assert res.order_status == ORDER_PAID
    assert len(res.tickets) == 2
    stored = await orders.get(db, order["id"])
    assert stored["status"] == ORDER_PAID
    assert stored["paid_at"] is not None
    assert len(await tickets.list_for_order(db, order["id"])) == 2
    notes = [e["note"] for e in await orders.timeline(db, order["id"])]
    assert any("after an earlier failure" in n for n in notes)
    inv = await ledger.compute_inventory(db, tier["id"])
    assert inv["sold"] == 2 and inv["available"] == 8


async def test_success_after_failure_without_capacity_is_unfulfilled(
    db, evlog, signer, mockpay, open_order
):
    tier, _, order = await open_order(quantity=2, quantity_total=2)
    await _deliver(db, evlog, signer, mockpay, order, "failed")
    # the released seats go to someone else
    assert (await ledger.reserve(db, tier["id"], "bob", 2)).ok

    _, res = await _deliver(db, evlog, signer, mockpay, order, "succeeded")
    assert res.applied
    assert res.order_status == ORDER_PAID_UNFULFILLED
    assert await tickets.list_for_order(db, order["id"]) == []
    inv = await ledger.compute_inventory(db, tier["id"])
    assert inv["sold"] == 0 and inv["active_holds"] == 2


async def test_cancel_is_a_failure(db, evlog, signer, mockpay, open_order):
    _, _, order = await open_order()
    _, res = await _deliver(db, evlog, signer, mockpay, order, "canceled")
    assert res.order_status == ORDER_FAILED
    notes = [e["note"] for e in await orders.timeline(db, order["id"])]
    assert "Payment canceled" in notes


async def test_refund_revokes_tickets_and_frees_capacity(
    db, evlog, signer, mockpay, open_order
):
    tier, _, order = await open_order(quantity=2, quantity_total=2)
    await _deliver(db, evlog, signer, mockpay, order, "succeeded")
    _, res = await _deliver(db, evlog, signer, mockpay, order, "refunded")

    assert res.applied
    assert (await orders.get(db, order["id"]))["status"] == ORDER_REFUNDED
    statuses = {t["status"] for t in
                await tickets.list_for_order(db, order["id"])}
    assert statuses == {TICKET_REVOKED}
    inv = await ledger.compute_inventory(db, tier["id"])
    assert inv["sold"] == 0 and inv["available"] == 2


async def test_refund_leaves_scanned_tickets_alone(
    db, evlog, signer, mockpay, open_order
):
    _, _, order = await open_order(quantity=2)
    _, paid = await _deliver(db, evlog, signer, mockpay, order, "succeeded")
    scanned = paid.tickets[0]
    first = await checkin.scan(db, signer, scanned["token"], "door-1")
    assert first.outcome == checkin.Outcome.SUCCESS

    await _deliver(db, evlog, signer, mockpay, order, "refunded")
    by_id = {t["id"]: t["status"] for t in
             await tickets.list_for_order(db, order["id"])}
    assert by_id.pop(scanned["id"]) == TICKET_SCANNED
    assert set(by_id.values()) == {TICKET_REVOKED}


async def test_amount_mismatch_is_not_applied(
    db, evlog, signer, mockpay, open_order
):
    _, _, order = await open_order()
    evt = ProcessorEvent(kind=KIND_SUCCEEDED,
                         txn_id=order["processor_txn_id"],
                         amount=order["amount"] - 1, event_id="evt_short")
    res = await fulfillment.on_event(db, evlog, signer, evt)
    assert not res.applied
    assert res.reason == fulfillment.R_AMOUNT_MISMATCH
    assert (await orders.get(db, order["id"]))["status"] == ORDER_PENDING
    assert not await evlog.seen("evt_short")


async def test_unknown_kind_and_unknown_order(db, evlog, signer):
    ignored = await fulfillment.on_event(db, evlog, signer, ProcessorEvent(
        kind="customer.created", txn_id="", amount=None, event_id="evt_1"))
    assert ignored.reason == fulfillment.R_IGNORED

    unknown = await fulfillment.on_event(db, evlog, signer, ProcessorEvent(
        kind=KIND_SUCCEEDED, txn_id="mock_nope", amount=1, event_id="evt_2"))
    assert unknown.reason == fulfillment.R_UNKNOWN_ORDER
    # not recorded, so a redelivery after the order exists is applied
    assert not await evlog.seen("evt_2")


async def test_late_success_books_when_capacity_remains(
    db, signer, open_order
):
    now = now_ts()
    tier, hold, order = await open_order(quantity=2, ttl_seconds=60, now=now)

    res = await fulfillment.apply_success(
        db, signer, order["id"], amount=order["amount"], now=now + 120
    )
    assert res.applied and res.order_status == ORDER_PAID
    assert len(res.tickets) == 2
    assert (await ledger.get_hold(db, hold["id"]))["status"] == HOLD_CONVERTED
    notes = [e["note"] for e in await orders.timeline(db, order["id"])]
    assert any("booked late" in n for n in notes)


async def test_late_success_without_capacity_is_unfulfilled(
    db, signer, open_order
):
    now = now_ts()
    tier, hold, order = await open_order(
        quantity=2, quantity_total=2, ttl_seconds=60, now=now
    )
    # the lapsed hold's seats go to someone else
    assert (await ledger.reserve(db, tier["id"], "bob", 2, now=now + 61)).ok

    res = await fulfillment.apply_success(
        db, signer, order["id"], amount=order["amount"], now=now + 62
    )
    assert res.applied
    assert res.order_status == ORDER_PAID_UNFULFILLED
    assert res.tickets == []
    assert await tickets.list_for_order(db, order["id"]) == []
    stored = await orders.get(db, order["id"])
    assert stored["paid_at"] is not None

    refunded = await fulfillment.apply_refund(db, order["id"])
    assert refunded.order_status == ORDER_REFUNDED
