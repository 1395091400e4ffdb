"""Shared fixtures: a throwaway SQLite database per test."""
import os

os.environ.setdefault("TICKET_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./ticketgate-test.db")
os.environ.setdefault("RECONCILE_INTERVAL_SECONDS", "0")
os.environ["EVENTLOG_BACKEND"] = "pg"

import time

import pytest

from ticketgate.infra.sql import GatedAsyncSession, make_async_engine
from ticketgate.mockpay import MockPay
from ticketgate.model import ledger
from ticketgate.model.eventlog._postgres import EventLog as PgEventLog
from ticketgate.model.orm import Base
from ticketgate.signer import TicketSigner

NOW = float(int(time.time()))


@pytest.fixture
async def engine_parts(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def new_db(engine_parts):
    """Factory for independent sessions, for concurrency tests."""
    SessionAsync, gated = engine_parts
    opened = []

    def _new() -> GatedAsyncSession:
        session = SessionAsync()
        opened.append(session)
        return GatedAsyncSession(session=session, gated=gated)

    yield _new
    for session in opened:
        await session.close()


@pytest.fixture
def db(new_db) -> GatedAsyncSession:
    return new_db()


@pytest.fixture
def signer() -> TicketSigner:
    return TicketSigner("test-signing-secret")


@pytest.fixture
def mockpay(engine_parts) -> MockPay:
    SessionAsync, gated = engine_parts
    return MockPay(SessionAsync, gated, secret="test-mock-secret")


@pytest.fixture
async def evlog(engine_parts):
    SessionAsync, gated = engine_parts
    async with SessionAsync() as session:
        yield PgEventLog(db=session, gated=gated)


@pytest.fixture
def make_tier(db):
    """Creates an event plus one tier on it; returns the tier row."""
    async def _make(
        unit_price=2500, quantity_total=10, max_per_order=4,
        ends_at=None, **kw
    ):
        ev = await ledger.create_event(
            db, "Warehouse Night", starts_at=NOW, ends_at=ends_at
        )
        return await ledger.create_tier(
            db, ev["id"], "General", unit_price=unit_price,
            quantity_total=quantity_total, max_per_order=max_per_order, **kw
        )
    return _make
