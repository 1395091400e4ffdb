from __future__ import annotations
import redis.asyncio as redis

SEEN_TTL_SECONDS = 24 * 3600


# ---- keys
def k_evt(event_id: str) -> str: return f"procevt:{event_id}"


class EventLog:
    """Processor event ids already applied, as NX keys with a 24h TTL."""

    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def seen(self, event_id: str | None) -> bool:
        if not event_id:
            return False
        return bool(await self.r.exists(k_evt(event_id)))

    async def record(self, event_id: str | None, kind: str,
                     txn_id: str) -> bool:
        if not event_id:
            return True
        ok = await self.r.set(
            k_evt(event_id), f"{kind}:{txn_id}", nx=True, ex=SEEN_TTL_SECONDS
        )
        return bool(ok)
