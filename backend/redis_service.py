"""
Redis fan-out of license lifecycle events.

Every status change, device reset or subscription cascade is published so that
admin dashboards (GET /admin/events) see it immediately.  The database stays
the source of truth: publishing is fire-and-forget and a Redis outage never
fails the request that caused the event.

  license_events:recent   LIST, newest first, capped at RECENT_EVENTS_MAX
  license:events          Pub/Sub channel carrying the same JSON payloads:
                          {"license_id", "license_key", "action", "actor", "ts", ...}

After BREAKER_TRIP_AFTER consecutive Redis errors the breaker trips and both
operations become no-ops for BREAKER_COOL_DOWN seconds; the first call after
that is a trial and either resets the breaker or trips it again.
"""

import json
import os
import time

from redis.asyncio import Redis, RedisError

from database import isoformat, utcnow
from logging_config import get_logger, mask_key

logger = get_logger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
EVENTS_CHANNEL = "license:events"
RECENT_EVENTS_KEY = "license_events:recent"
RECENT_EVENTS_MAX = 200

BREAKER_TRIP_AFTER = 3
BREAKER_COOL_DOWN = 60.0

# Replaced with a FakeAsyncRedis instance in tests.
_redis: Redis | None = None


class RedisBreaker:
    def __init__(self, trip_after: int = BREAKER_TRIP_AFTER, cool_down: float = BREAKER_COOL_DOWN) -> None:
        self.trip_after = trip_after
        self.cool_down = cool_down
        self.consecutive_errors = 0
        self.tripped_at: float | None = None

    def allows(self) -> bool:
        if self.tripped_at is None:
            return True
        return time.monotonic() - self.tripped_at >= self.cool_down

    def ok(self) -> None:
        if self.tripped_at is not None:
            logger.info("redis_breaker_reset")
        self.consecutive_errors = 0
        self.tripped_at = None

    def error(self) -> None:
        self.consecutive_errors += 1
        if self.consecutive_errors < self.trip_after:
            return
        was_tripped = self.tripped_at is not None
        self.tripped_at = time.monotonic()
        if not was_tripped:
            logger.error("redis_breaker_tripped", extra={
                "consecutive_errors": self.consecutive_errors,
                "cool_down_s": self.cool_down,
            })


breaker = RedisBreaker()


async def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is None:
        return
    await _redis.aclose()
    _redis = None


# ── Events ────────────────────────────────────────────────────────────────────

async def publish_license_event(
    action: str,
    license_id: int | None,
    license_key: str,
    actor: str = "system",
    **details,
) -> None:
    """Push one event onto the recent list and the Pub/Sub channel."""
    if not breaker.allows():
        logger.warning("redis_event_dropped", extra={"action": action, "license_id": license_id})
        return
    event = json.dumps({
        "license_id": license_id,
        "license_key": license_key,
        "action": action,
        "actor": actor,
        "ts": isoformat(utcnow()),
        **details,
    }, default=str)
    try:
        r = await get_redis()
        async with r.pipeline(transaction=True) as pipe:
            pipe.lpush(RECENT_EVENTS_KEY, event)
            pipe.ltrim(RECENT_EVENTS_KEY, 0, RECENT_EVENTS_MAX - 1)
            pipe.publish(EVENTS_CHANNEL, event)
            await pipe.execute()
    except (RedisError, OSError) as exc:
        breaker.error()
        logger.error("redis_publish_failed", extra={
            "action": action, "license_key": mask_key(license_key), "error": str(exc),
        })
        return
    breaker.ok()


async def recent_events(limit: int = 50) -> list[dict]:
    """Newest-first backfill for the admin dashboard; empty while Redis is unavailable."""
    if not breaker.allows():
        return []
    try:
        r = await get_redis()
        raw = await r.lrange(RECENT_EVENTS_KEY, 0, limit - 1)
    except (RedisError, OSError) as exc:
        breaker.error()
        logger.error("redis_read_failed", extra={"key": RECENT_EVENTS_KEY, "error": str(exc)})
        return []
    breaker.ok()
    return [json.loads(item) for item in raw]
