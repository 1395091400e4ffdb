from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
)


Base = declarative_base()

# Hold statuses
HOLD_ACTIVE = "active"
HOLD_CONVERTED = "converted"
HOLD_EXPIRED = "expired"
HOLD_CANCELLED = "cancelled"

# Order statuses
ORDER_PENDING = "payment_pending"
ORDER_PAID = "paid"
ORDER_FAILED = "payment_failed"
ORDER_REFUNDED = "refunded"
ORDER_PAID_UNFULFILLED = "paid_unfulfilled"

# Ticket statuses
TICKET_ACTIVE = "active"
TICKET_SCANNED = "scanned"
TICKET_REVOKED = "revoked"
TICKET_EXPIRED = "expired"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    starts_at = Column(Float, nullable=True)
    ends_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    __table_args__ = (
        CheckConstraint("quantity_total >= 0", name="ck_tier_quantity"),
        CheckConstraint("max_per_order > 0", name="ck_tier_max_per_order"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="usd")
    quantity_total = Column(Integer, nullable=False)
    max_per_order = Column(Integer, nullable=False)
    sale_starts_at = Column(Float, nullable=True)
    sale_ends_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class Hold(Base):
    __tablename__ = "holds"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_hold_quantity"),
        Index("holds_tier_status_idx", "tier_id", "status"),
        Index("holds_status_expires_idx", "status", "expires_at"),
    )
    id = Column(String, primary_key=True)
    tier_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    requester_id = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    # active | converted | expired | cancelled
    status = Column(String, nullable=False, default=HOLD_ACTIVE)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("orders_status_created_idx", "status", "created_at"),
    )
    id = Column(String, primary_key=True)
    requester_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False)
    tier_id = Column(String, nullable=False)
    hold_id = Column(String, nullable=False, unique=True)
    quantity = Column(Integer, nullable=False)
    processor = Column(String, nullable=False)
    processor_txn_id = Column(String, nullable=True, unique=True)

    # payment_pending | paid | payment_failed | refunded | paid_unfulfilled
    status = Column(String, nullable=False, default=ORDER_PENDING)
    subtotal = Column(Integer, nullable=False)  # cents
    fee = Column(Integer, nullable=False)  # cents
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="usd")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class OrderTimeline(Base):
    __tablename__ = "order_timeline"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, index=True)
    at = Column(Float, nullable=False)
    status = Column(String, nullable=False)
    note = Column(Text, nullable=False, default="")


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        Index("tickets_tier_status_idx", "tier_id", "status"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=True, index=True)  # NULL: free tier
    hold_id = Column(String, nullable=False)
    tier_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    holder_id = Column(String, nullable=False, index=True)
    holder_name = Column(String, nullable=True)
    token = Column(String, nullable=False, unique=True)

    # active | scanned | revoked | expired
    status = Column(String, nullable=False, default=TICKET_ACTIVE)
    issued_at = Column(Float, nullable=False)
    checked_in_at = Column(Float, nullable=True)
    checked_in_by = Column(String, nullable=True)


class Checkin(Base):
    """Append-only: one row per scan attempt."""
    __tablename__ = "checkins"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(String, nullable=True, index=True)
    event_id = Column(String, nullable=True, index=True)
    scanner_id = Column(String, nullable=False)
    device_id = Column(String, nullable=True)
    outcome = Column(String, nullable=False)
    scanned_at = Column(Float, nullable=False)


class ProcessorEvent(Base):
    __tablename__ = "processor_events"
    event_id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    txn_id = Column(String, nullable=False)
    received_at = Column(Float, nullable=False)


class MockTransaction(Base):
    __tablename__ = "mockpay_transactions"
    id = Column(String, primary_key=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    # pending | succeeded | failed | canceled | refunded
    status = Column(String, nullable=False, default="pending")
    idempotency_key = Column(String, nullable=True, unique=True)
    metadata_json = Column(Text, nullable=False, default="{}")
    created_at = Column(Float, nullable=False)
