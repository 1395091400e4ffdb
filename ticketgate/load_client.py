#!/usr/bin/env python3
"""
ticketgate load client (async)

Creates one event with one tier of --capacity tickets, then lets --total
buyers fight over it concurrently:
  1) POST /api/holds              (x-user-id: buyer-N) -> {hold_id}
  2) POST /api/orders             {hold_id} -> {order_id, client_params}
  3) POST /mockpay/{txn_id}/emit  (t=succeeded|failed|canceled)
  4) Poll GET /api/orders/{order_id} until status != payment_pending

Finally reads GET /api/inventory/{tier_id} and exits non-zero if more
tickets were sold than the tier holds.

Usage:
  python -m ticketgate.load_client --base http://localhost:8000 \
                                   --total 500 --capacity 100 \
                                   --concurrency 50 --fail-rate 0.1

Notes:
- This targets the MockPay flow.
- Keep server workers=1 with SQLite to avoid lock contention artifacts.
"""

import asyncio
import random
import sys
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

FINAL = ("paid", "payment_failed", "paid_unfulfilled", "refunded")


@dataclass
class Result:
    ok: bool
    outcome: str  # sold_out/paid/payment_failed/.../timeout/error
    t_hold: float = 0.0
    t_order: float = 0.0
    t_observed: float = 0.0  # time until a final status was observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_observed for r in self.results if r.t_observed > 0]
        holds = [r.t_hold for r in self.results if r.t_hold > 0]

        def pct(values, p):
            if not values:
                return 0.0
            x = sorted(values)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "paid": self.count("paid"),
            "failed": self.count("payment_failed"),
            "sold_out": self.count("sold_out"),
            "timeout": self.count("timeout"),
            "error": self.count("error"),
            "hold_p50_s": pct(holds, 50),
            "hold_p99_s": pct(holds, 99),
            "p50_s": pct(lat, 50),
            "p99_s": pct(lat, 99),
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"PAID: {int(s['paid'])}   FAILED: {int(s['failed'])}   "
            f"SOLD OUT: {int(s['sold_out'])}   TIMEOUT: {int(s['timeout'])}"
            f"   ERROR: {int(s['error'])}"
        )
        print(
            f"Hold latency: p50 {s['hold_p50_s']:.3f}s   "
            f"p99 {s['hold_p99_s']:.3f}s"
        )
        print(
            f"Order resolution: p50 {s['p50_s']:.3f}s   "
            f"p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} buyers/s"
        )


async def setup_tier(
    client: httpx.AsyncClient, base: str, user: str, password: str,
    capacity: int, price: int, max_per_order: int,
) -> str:
    resp = await client.post(
        f"{base}/admin/login",
        data={"username": user, "password": password, "next": "/"},
    )
    if resp.status_code >= 400:
        raise RuntimeError(f"admin login failed: HTTP {resp.status_code}")
    resp = await client.post(
        f"{base}/api/admin/events", json={"name": "Load test"}
    )
    resp.raise_for_status()
    event_id = resp.json()["id"]
    resp = await client.post(f"{base}/api/admin/tiers", json={
        "event_id": event_id,
        "name": "General admission",
        "unit_price": price,
        "quantity_total": capacity,
        "max_per_order": max_per_order,
    })
    resp.raise_for_status()
    return resp.json()["id"]


async def one_buyer(
    client: httpx.AsyncClient,
    base: str,
    buyer: str,
    tier_id: str,
    quantity: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="error")
    hdrs = {"x-user-id": buyer}

    # 1) hold
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/holds",
            json={"tier_id": tier_id, "quantity": quantity,
                  "display_name": buyer},
            headers=hdrs, timeout=30.0,
        )
    except httpx.HTTPError as e:
        r.err = f"hold: {e}"
        return r
    r.t_hold = time.perf_counter() - t0
    if resp.status_code == 409:
        r.ok = True
        r.outcome = "sold_out"
        return r
    if resp.status_code != 200:
        r.err = f"hold HTTP {resp.status_code}"
        return r
    hold_id = resp.json()["hold_id"]

    # 2) order
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/orders", json={"hold_id": hold_id},
            headers=hdrs, timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
    except httpx.HTTPError as e:
        r.err = f"order: {e}"
        return r
    r.t_order = time.perf_counter() - t1
    if j.get("free"):
        r.ok = True
        r.outcome = "paid"
        return r
    order_id = j["order_id"]
    txn_id = j["client_params"]["txn_id"]

    # 3) emit outcome (the buyer pays, or not)
    try:
        resp = await client.post(
            f"{base}/mockpay/{txn_id}/emit",
            data={"t": emit_kind}, timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r

    # 4) poll order status
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "payment_pending"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(
                f"{base}/api/orders/{order_id}", headers=hdrs, timeout=10.0
            )
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in FINAL:
                    break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status in FINAL else "timeout"
    return r


async def run_load(
    base: str,
    total: int,
    capacity: int,
    price: int,
    concurrency: int,
    max_qty: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
    admin_user: str,
    admin_password: str,
) -> int:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "ticketgateLoad/1.0"}
    ) as client:
        tier_id = await setup_tier(
            client, base, admin_user, admin_password, capacity, price,
            max_qty,
        )
        print(f"tier {tier_id}: capacity {capacity}, {total} buyers")

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"
                res = await one_buyer(
                    client, base, f"buyer-{n}", tier_id,
                    random.randint(1, max_qty), emit_kind,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        t_start = time.perf_counter()
        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)
        stats.print(time.perf_counter() - t_start)

        inv = (await client.get(f"{base}/api/inventory/{tier_id}")).json()

    print(f"\nInventory: {inv}")
    if inv["sold"] > inv["capacity"]:
        print(f"OVERSOLD: {inv['sold']} tickets for {inv['capacity']} seats")
        return 1
    print("No oversell.")
    return 0


def main():
    ap = argparse.ArgumentParser(description="ticketgate load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=200,
                    help="Total buyers to run")
    ap.add_argument("--capacity", type=int, default=50,
                    help="Tickets in the contested tier")
    ap.add_argument("--price", type=int, default=2500,
                    help="Unit price in cents (0 for a free tier)")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent buyers")
    ap.add_argument("--max-qty", type=int, default=2,
                    help="Buyers ask for 1..max-qty tickets")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of payments to mark as canceled")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for a final order status")
    ap.add_argument("--admin-user", default="admin")
    ap.add_argument("--admin-password", default="supasecret")
    args = ap.parse_args()

    if args.fail_rate + args.cancel_rate > 0.95:
        print(
            "Warning: combined fail+cancel rate is very high; "
            "few paid outcomes will occur."
        )

    sys.exit(asyncio.run(run_load(
        base=args.base,
        total=args.total,
        capacity=args.capacity,
        price=args.price,
        concurrency=args.concurrency,
        max_qty=args.max_qty,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
        admin_user=args.admin_user,
        admin_password=args.admin_password,
    )))


if __name__ == "__main__":
    main()
