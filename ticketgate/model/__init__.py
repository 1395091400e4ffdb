from .orm import (
    Base, Event, TicketTier, Hold, Order, OrderTimeline, Ticket, Checkin,
    ProcessorEvent, MockTransaction,
)

__all__ = [
    "Base", "Event", "TicketTier", "Hold", "Order", "OrderTimeline",
    "Ticket", "Checkin", "ProcessorEvent", "MockTransaction",
]
