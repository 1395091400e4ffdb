import asyncio

import pytest

from conftest import NOW
from ticketgate.errors import ErrorCode, ValidationError
from ticketgate.model import ledger
from ticketgate.model.orm import HOLD_CANCELLED, HOLD_CONVERTED, HOLD_EXPIRED


async def test_reserve_counts_against_inventory(db, make_tier):
    tier = await make_tier(quantity_total=10)
    res = await ledger.reserve(db, tier["id"], "alice", 3, "Alice", now=NOW)
    assert res.ok
    assert res.hold["expires_at"] == NOW + ledger.HOLD_TTL_SECONDS

    inv = await ledger.compute_inventory(db, tier["id"], now=NOW + 1)
    assert inv["capacity"] == 10
    assert inv["active_holds"] == 3
    assert inv["sold"] == 0
    assert inv["available"] == 7
    assert not inv["sold_out"]


async def test_sold_out(db, make_tier):
    tier = await make_tier(quantity_total=3)
    assert (await ledger.reserve(db, tier["id"], "a", 2, now=NOW)).ok
    res = await ledger.reserve(db, tier["id"], "b", 2, now=NOW)
    assert res.error == ErrorCode.SOLD_OUT
    assert (await ledger.reserve(db, tier["id"], "b", 1, now=NOW)).ok
    inv = await ledger.compute_inventory(db, tier["id"], now=NOW)
    assert inv["sold_out"]


async def test_concurrent_reserves_never_oversell(new_db, make_tier):
    tier = await make_tier(quantity_total=5, max_per_order=1)

    results = await asyncio.gather(*[
        ledger.reserve(new_db(), tier["id"], f"buyer-{i}", 1, now=NOW)
        for i in range(12)
    ])
    ok = [r for r in results if r.ok]
    assert len(ok) == 5
    assert all(r.error == ErrorCode.SOLD_OUT for r in results if not r.ok)

    inv = await ledger.compute_inventory(new_db(), tier["id"], now=NOW)
    assert inv["available"] == 0


async def test_lapsed_holds_stop_counting_without_a_sweep(db, make_tier):
    tier = await make_tier(quantity_total=2)
    first = await ledger.reserve(db, tier["id"], "a", 2, now=NOW,
                                 ttl_seconds=60)
    assert first.ok
    assert (await ledger.reserve(db, tier["id"], "b", 1, now=NOW + 59)) \
        .error == ErrorCode.SOLD_OUT

    later = await ledger.reserve(db, tier["id"], "b", 2, now=NOW + 60)
    assert later.ok
    # the lapsed hold is still 'active' in storage
    hold = await ledger.get_hold(db, first.hold["id"])
    assert hold["status"] == "active"


async def test_per_order_limit(db, make_tier):
    tier = await make_tier(max_per_order=4)
    res = await ledger.reserve(db, tier["id"], "a", 5, now=NOW)
    assert res.error == ErrorCode.OVER_LIMIT


async def test_per_requester_limit_spans_active_holds(db, make_tier):
    tier = await make_tier(max_per_order=4)
    assert (await ledger.reserve(db, tier["id"], "a", 3, now=NOW)).ok
    res = await ledger.reserve(db, tier["id"], "a", 2, now=NOW)
    assert res.error == ErrorCode.OVER_LIMIT
    # someone else is unaffected
    assert (await ledger.reserve(db, tier["id"], "b", 2, now=NOW)).ok


async def test_sale_window(db, make_tier):
    tier = await make_tier(sale_starts_at=NOW + 100, sale_ends_at=NOW + 200)
    assert (await ledger.reserve(db, tier["id"], "a", 1, now=NOW)) \
        .error == ErrorCode.SALE_CLOSED
    assert (await ledger.reserve(db, tier["id"], "a", 1, now=NOW + 150)).ok
    assert (await ledger.reserve(db, tier["id"], "b", 1, now=NOW + 200)) \
        .error == ErrorCode.SALE_CLOSED


async def test_unknown_tier_and_bad_quantity(db, make_tier):
    assert (await ledger.reserve(db, "nope", "a", 1, now=NOW)) \
        .error == ErrorCode.NOT_FOUND
    tier = await make_tier()
    assert (await ledger.reserve(db, tier["id"], "a", 0, now=NOW)) \
        .error == ErrorCode.VALIDATION_ERROR


async def test_release_returns_capacity(db, make_tier):
    tier = await make_tier(quantity_total=2)
    res = await ledger.reserve(db, tier["id"], "a", 2, now=NOW)
    assert await ledger.release(db, res.hold["id"], now=NOW + 1)
    assert not await ledger.release(db, res.hold["id"], now=NOW + 2)
    assert (await ledger.get_hold(db, res.hold["id"]))["status"] \
        == HOLD_CANCELLED
    assert (await ledger.reserve(db, tier["id"], "b", 2, now=NOW + 3)).ok


async def test_terminal_states_do_not_move(db, make_tier):
    tier = await make_tier()
    res = await ledger.reserve(db, tier["id"], "a", 1, now=NOW)
    hold_id = res.hold["id"]

    converted = await ledger.convert(db, hold_id, now=NOW + 1)
    assert converted["status"] == HOLD_CONVERTED
    assert converted["quantity"] == 1
    assert await ledger.convert(db, hold_id, now=NOW + 2) is None
    assert not await ledger.expire(db, hold_id, now=NOW + 3)
    assert not await ledger.release(db, hold_id, now=NOW + 4)


async def test_convert_refuses_a_lapsed_hold(db, make_tier):
    tier = await make_tier()
    res = await ledger.reserve(db, tier["id"], "a", 1, now=NOW,
                               ttl_seconds=10)
    assert await ledger.convert(db, res.hold["id"], now=NOW + 10) is None


async def test_expire_moves_live_and_lapsed_holds_alike(db, make_tier):
    tier = await make_tier()
    live = await ledger.reserve(db, tier["id"], "a", 1, now=NOW,
                                ttl_seconds=100)
    lapsed = await ledger.reserve(db, tier["id"], "b", 1, now=NOW,
                                  ttl_seconds=10)
    assert await ledger.expire(db, live.hold["id"], now=NOW + 50)
    assert await ledger.expire(db, lapsed.hold["id"], now=NOW + 50)
    for res in (live, lapsed):
        assert (await ledger.get_hold(db, res.hold["id"]))["status"] \
            == HOLD_EXPIRED


async def test_expire_stale_holds(db, make_tier):
    tier = await make_tier()
    old = await ledger.reserve(db, tier["id"], "a", 1, now=NOW,
                               ttl_seconds=10)
    fresh = await ledger.reserve(db, tier["id"], "b", 1, now=NOW,
                                 ttl_seconds=100)
    expired = await ledger.expire_stale_holds(db, now=NOW + 50)
    assert expired == [old.hold["id"]]
    assert (await ledger.get_hold(db, old.hold["id"]))["status"] \
        == HOLD_EXPIRED
    assert (await ledger.get_hold(db, fresh.hold["id"]))["status"] \
        == "active"


async def test_tier_validation(db, make_tier):
    with pytest.raises(ValidationError):
        await make_tier(quantity_total=-1)
    with pytest.raises(ValidationError):
        await ledger.create_tier(db, "no-such-event", "X", unit_price=0,
                                 quantity_total=1)
    tier = await make_tier(max_per_order=None)
    assert tier["max_per_order"] == ledger.DEFAULT_MAX_PER_ORDER


async def test_zero_capacity_tier_is_sold_out(db, make_tier):
    tier = await make_tier(quantity_total=0)
    assert (await ledger.reserve(db, tier["id"], "a", 1, now=NOW)) \
        .error == ErrorCode.SOLD_OUT
