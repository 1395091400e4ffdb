from __future__ import annotations
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated


class EventLog:
    """Processor event ids already applied (table processor_events)."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def seen(self, event_id: str | None) -> bool:
        if not event_id:
            return False
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT 1 FROM processor_events WHERE event_id=:e
                """), {"e": event_id})).first()
        return row is not None

    async def record(self, event_id: str | None, kind: str,
                     txn_id: str) -> bool:
        """True if this call recorded the id, False if it was known."""
        if not event_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO processor_events(
                    event_id, kind, txn_id, received_at
                  ) VALUES (:e, :k, :t, :now)
                  ON CONFLICT (event_id) DO NOTHING
                  RETURNING event_id
                """), {"e": event_id, "k": kind, "t": txn_id,
                       "now": now_ts()})).first()
        return row is not None
