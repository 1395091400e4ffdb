"""Ticket inventory, issuance and check-in engine."""

__version__ = "0.1.0"
