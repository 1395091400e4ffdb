from __future__ import annotations
import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import checkin, coordinator, fulfillment, reconciler
from .errors import DomainError, ErrorCode, NotFoundError, ForbiddenError, \
    ValidationError
from .helpers import ct_equal, to_iso
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import aggregates, log_aggregates, timeit
from .mockpay import MockPay, PaymentAdapter
from .model import ledger, orders, tickets
from .model.eventlog import BACKEND as EVENTLOG_BACKEND, EventLog, new_store
from .model.orm import Base
from .signer import TicketSigner
from .stripepay import StripePay

log = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
PAYMENT_PROCESSOR = os.environ.get("PAYMENT_PROCESSOR", "mockpay").lower()

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

RECONCILE_INTERVAL_SECONDS = float(
    os.environ.get("RECONCILE_INTERVAL_SECONDS", "900")
)
SCAN_TIMEOUT_SECONDS = float(os.environ.get("SCAN_TIMEOUT_SECONDS", "2.0"))
RESERVE_TIMEOUT_SECONDS = float(
    os.environ.get("RESERVE_TIMEOUT_SECONDS", "3.0")
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

_RESERVE_MESSAGES = {
    ErrorCode.VALIDATION_ERROR: "quantity must be at least 1",
    ErrorCode.NOT_FOUND: "tier not found",
    ErrorCode.SALE_CLOSED: "sales for this tier are closed",
    ErrorCode.OVER_LIMIT: "quantity exceeds the per-order limit",
    ErrorCode.SOLD_OUT: "not enough tickets left",
}


# ---
# startup / shutdown
# ---
def _say_hello():
    dialect = DATABASE_URL.split(":", 1)[0]
    E = 'PostgreSQL' if EVENTLOG_BACKEND == 'pg' else 'Redis'
    print('\n' * 3)
    print('=' * 50)
    print('ticketgate is starting up...')
    print(f'   - Database: {dialect}')
    print(f'   - Payment processor: {PAYMENT_PROCESSOR}')
    print(f'   - Processor event log backend: {E}')
    print('=' * 50)
    print('\n' * 3)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if DATABASE_URL is None:
        print("NEED DATABASE_URL! e.g. sqlite:///./ticketgate.db")
        sys.exit(1)
    _say_hello()

    engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.signer = TicketSigner()

    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )

    app.state.redis = None
    if EVENTLOG_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    if PAYMENT_PROCESSOR == "stripe":
        app.state.adapter = StripePay()
    else:
        app.state.adapter = MockPay(SessionAsync, gated)

    app.state.reconcile_task = None
    if RECONCILE_INTERVAL_SECONDS > 0:
        app.state.reconcile_task = asyncio.create_task(
            reconciler.run_forever(
                SessionAsync, gated, app.state.adapter, app.state.signer,
                RECONCILE_INTERVAL_SECONDS,
            )
        )

    try:
        yield
    finally:
        task = app.state.reconcile_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await app.state.http.aclose()
        if app.state.redis is not None:
            await app.state.redis.close()
        await engine.dispose()
        log_aggregates()


app = FastAPI(
    title="ticketgate",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    return ORJSONResponse(
        status_code=exc.http_status,
        content={"detail": {"code": exc.code.value, "message": exc.message}},
    )


def _timed_out() -> HTTPException:
    return HTTPException(
        503, detail={"code": ErrorCode.INTERNAL_ERROR.value,
                     "message": "timed out"},
    )


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> GatedAsyncSession:
    state = request.app.state
    async with state.SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=state.gated)


async def eventlog(request: Request) -> EventLog:
    state = request.app.state
    if EVENTLOG_BACKEND == 'pg':
        async with state.SessionAsync() as session:
            yield new_store(db=session, gated=state.gated)
    else:
        yield new_store(r=state.redis)


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def get_signer(request: Request) -> TicketSigner:
    return request.app.state.signer


def requester(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise DomainError(ErrorCode.UNAUTHORIZED, "x-user-id header required")
    return x_user_id


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise DomainError(ErrorCode.UNAUTHORIZED, "admin login required")


# ----------------------------
# Payload helpers
# ----------------------------
def _int_field(payload: dict, key: str, default: Any = None) -> Optional[int]:
    value = payload.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def _float_field(payload: dict, key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a unix timestamp")


def _str_field(payload: dict, key: str, required: bool = True) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _ticket_view(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ticket_id": t["id"],
        "event_id": t["event_id"],
        "tier_id": t["tier_id"],
        "order_id": t["order_id"],
        "holder_name": t["holder_name"],
        "status": t["status"],
        "token": t["token"],
        "issued_at": to_iso(t["issued_at"]),
        "checked_in_at": to_iso(t["checked_in_at"]),
    }


def _order_view(o: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "order_id": o["id"],
        "status": o["status"],
        "hold_id": o["hold_id"],
        "event_id": o["event_id"],
        "tier_id": o["tier_id"],
        "quantity": o["quantity"],
        "subtotal": o["subtotal"],
        "fee": o["fee"],
        "amount": o["amount"],
        "currency": o["currency"],
        "processor": o["processor"],
        "processor_txn_id": o["processor_txn_id"],
        "created_at": to_iso(o["created_at"]),
        "paid_at": to_iso(o["paid_at"]),
    }


# ----------------------------
# API: holds
# ----------------------------
@app.post("/api/holds")
async def create_hold(
    payload: dict,
    user: str = Depends(requester),
    db: GatedAsyncSession = Depends(get_db),
):
    tier_id = _str_field(payload, "tier_id")
    quantity = _int_field(payload, "quantity", 1)
    display_name = _str_field(payload, "display_name", required=False)

    try:
        async with timeit("ledger.reserve"):
            res = await asyncio.wait_for(
                ledger.reserve(db, tier_id, user, quantity, display_name),
                RESERVE_TIMEOUT_SECONDS,
            )
    except asyncio.TimeoutError:
        log.warning("reserve on tier %s timed out", tier_id)
        raise _timed_out()

    if not res.ok:
        raise DomainError(res.error, _RESERVE_MESSAGES[res.error])
    return {
        "hold_id": res.hold["id"],
        "tier_id": tier_id,
        "quantity": res.hold["quantity"],
        "expires_at": to_iso(res.hold["expires_at"]),
    }


@app.delete("/api/holds/{hold_id}")
async def release_hold(
    hold_id: str,
    user: str = Depends(requester),
    db: GatedAsyncSession = Depends(get_db),
):
    hold = await ledger.get_hold(db, hold_id)
    if hold is None:
        raise NotFoundError("hold")
    if hold["requester_id"] != user:
        raise ForbiddenError("hold belongs to another requester")
    async with timeit("ledger.release"):
        await ledger.release(db, hold_id)
    hold = await ledger.get_hold(db, hold_id)
    return {"hold_id": hold_id, "status": hold["status"]}


@app.get("/api/inventory/{tier_id}")
async def get_inventory(
    tier_id: str, db: GatedAsyncSession = Depends(get_db)
):
    async with timeit("ledger.inventory"):
        inv = await ledger.compute_inventory(db, tier_id)
    if inv is None:
        raise NotFoundError("tier")
    return inv


# ----------------------------
# API: orders and tickets
# ----------------------------
@app.post("/api/orders")
async def create_order(
    payload: dict,
    user: str = Depends(requester),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    signer: TicketSigner = Depends(get_signer),
):
    hold_id = _str_field(payload, "hold_id")
    async with timeit("coordinator.start_order"):
        res = await coordinator.start_order(db, adapter, signer, hold_id, user)
    if res.free:
        return {"free": True, "tickets": [_ticket_view(t) for t in res.tickets]}
    order = res.order
    return {
        "free": False,
        "order_id": order["id"],
        "status": order["status"],
        "subtotal": order["subtotal"],
        "fee": order["fee"],
        "amount": order["amount"],
        "currency": order["currency"],
        "client_params": res.client_params,
    }


# Order status (polled by the client after payment)
@app.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    user: str = Depends(requester),
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("db.get_order"):
        order = await orders.get(db, order_id)
    if order is None:
        raise NotFoundError("order")
    if order["requester_id"] != user:
        raise ForbiddenError("order belongs to another requester")
    out = _order_view(order)
    out["timeline"] = [
        {"at": to_iso(e["at"]), "status": e["status"], "note": e["note"]}
        for e in await orders.timeline(db, order_id)
    ]
    out["tickets"] = [
        _ticket_view(t) for t in await tickets.list_for_order(db, order_id)
    ]
    return out


@app.get("/api/tickets")
async def my_tickets(
    user: str = Depends(requester),
    db: GatedAsyncSession = Depends(get_db),
):
    rows = await tickets.list_for_holder(db, user)
    return {"items": [_ticket_view(t) for t in rows]}


# ----------------------------
# API: door scanning
# ----------------------------
@app.post("/api/scan")
async def scan_ticket(
    payload: dict,
    x_user_id: Optional[str] = Header(None),
    db: GatedAsyncSession = Depends(get_db),
    signer: TicketSigner = Depends(get_signer),
):
    scanner_id = payload.get("scanner_id") or x_user_id
    if not scanner_id:
        raise DomainError(ErrorCode.UNAUTHORIZED, "scanner_id required")
    token = payload.get("token")
    if not isinstance(token, str):
        token = ""

    try:
        async with timeit("checkin.scan"):
            res = await asyncio.wait_for(
                checkin.scan(
                    db, signer, token, str(scanner_id),
                    event_id=payload.get("event_id"),
                    device_id=payload.get("device_id"),
                ),
                SCAN_TIMEOUT_SECONDS,
            )
    except asyncio.TimeoutError:
        log.warning("scan by %s timed out", scanner_id)
        raise _timed_out()

    return {
        "outcome": res.outcome.value,
        "ticket_id": res.ticket_id,
        "holder_display_name": res.holder_display_name,
        "checked_in_at": to_iso(res.checked_in_at),
    }


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    evlog: EventLog = Depends(eventlog),
    adapter: PaymentAdapter = Depends(get_adapter),
    signer: TicketSigner = Depends(get_signer),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    evt = adapter.parse_event(event)
    if not evt.txn_id and evt.kind in fulfillment.KNOWN_KINDS:
        raise HTTPException(400, detail="missing transaction id")

    async with timeit("fulfillment.on_event"):
        res = await fulfillment.on_event(db, evlog, signer, evt)

    if res.reason == fulfillment.R_UNKNOWN_ORDER:
        # the order may not have its txn id yet; let the processor retry
        raise HTTPException(404, detail="order not found")
    return {
        "ok": True,
        "applied": res.applied,
        "idempotent": res.reason in (fulfillment.R_REPLAY,
                                     fulfillment.R_DUPLICATE),
        "order_status": res.order_status,
        "reason": res.reason or None,
    }


# ----------------------------
# MockPay
# ----------------------------
@app.post("/mockpay/{txn_id}/emit")
async def mockpay_emit(
    txn_id: str,
    request: Request,
    adapter: PaymentAdapter = Depends(get_adapter),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mockpay is not enabled")
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled|refunded
    if kind not in {"succeeded", "failed", "canceled", "refunded"}:
        raise HTTPException(400, detail="invalid kind")

    async with timeit("mockpay.settle"):
        event = await adapter.settle(txn_id, kind)
    if event is None:
        raise NotFoundError("transaction")

    payload, headers = adapter.signed_webhook(event)
    client_http: httpx.AsyncClient = request.app.state.http
    delivered = False
    try:
        r = await client_http.post(
            MOCK_WEBHOOK_URL, content=payload, headers=headers
        )
        delivered = r.status_code < 400
    except httpx.HTTPError as e:
        # the reconciler picks the outcome up from the transaction later
        log.warning("webhook delivery for %s failed: %s", txn_id, e)

    return {"ok": True, "event_id": event["id"], "type": event["type"],
            "delivered": delivered}


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/orders"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=(next or "/api/admin/orders"),
            status_code=HTTP_303_SEE_OTHER
        )
    raise DomainError(ErrorCode.UNAUTHORIZED, "invalid credentials")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.post("/api/admin/events", dependencies=[Depends(require_admin)])
async def api_admin_create_event(
    payload: dict, db: GatedAsyncSession = Depends(get_db)
):
    ev = await ledger.create_event(
        db,
        _str_field(payload, "name"),
        starts_at=_float_field(payload, "starts_at"),
        ends_at=_float_field(payload, "ends_at"),
    )
    return ev


@app.post("/api/admin/tiers", dependencies=[Depends(require_admin)])
async def api_admin_create_tier(
    payload: dict, db: GatedAsyncSession = Depends(get_db)
):
    tier = await ledger.create_tier(
        db,
        _str_field(payload, "event_id"),
        _str_field(payload, "name"),
        unit_price=_int_field(payload, "unit_price", 0),
        quantity_total=_int_field(payload, "quantity_total", 0),
        currency=_str_field(payload, "currency", required=False) or "usd",
        max_per_order=_int_field(payload, "max_per_order"),
        sale_starts_at=_float_field(payload, "sale_starts_at"),
        sale_ends_at=_float_field(payload, "sale_ends_at"),
    )
    return tier


@app.post("/api/admin/tickets/{ticket_id}/revoke",
          dependencies=[Depends(require_admin)])
async def api_admin_revoke(
    ticket_id: str, db: GatedAsyncSession = Depends(get_db)
):
    if await tickets.get_ticket(db, ticket_id) is None:
        raise NotFoundError("ticket")
    return {"ticket_id": ticket_id,
            "revoked": await tickets.revoke(db, ticket_id)}


@app.get("/api/admin/tickets/{ticket_id}/checkins",
         dependencies=[Depends(require_admin)])
async def api_admin_checkins(
    ticket_id: str, db: GatedAsyncSession = Depends(get_db)
):
    rows = await checkin.history(db, ticket_id)
    for r in rows:
        r["scanned_at"] = to_iso(r["scanned_at"])
    return {"items": rows}


@app.post("/api/admin/reconcile", dependencies=[Depends(require_admin)])
async def api_admin_reconcile(
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    signer: TicketSigner = Depends(get_signer),
):
    async with timeit("reconciler.sweep"):
        return await reconciler.sweep(db, adapter, signer)


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def api_admin_orders(limit: int = 200,
                           db: GatedAsyncSession = Depends(get_db)):
    rows = await orders.list_recent(db, limit=limit)
    return {"items": [_order_view(o) for o in rows], 'limit': limit}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": aggregates()}
