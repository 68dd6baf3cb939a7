import logging
import time
from datetime import datetime, timezone

import redis
import redis.asyncio as aioredis
from limits import RateLimitItemPerMinute
from limits.storage import RedisStorage
from limits.strategies import MovingWindowRateLimiter

from app.core.config import settings

logger = logging.getLogger(__name__)

# Shared Redis clients (created lazily, reused across requests / tasks)
_redis: aioredis.Redis | None = None
_sync_redis: redis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def get_sync_redis() -> redis.Redis:
    """Blocking client for Celery tasks, which run outside any event loop."""
    global _sync_redis
    if _sync_redis is None:
        _sync_redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _sync_redis


# ─── Webhook de-duplication ───────────────────────────────────────────────────

_WEBHOOK_SEEN_PREFIX = "webhook_seen:"


class RedisEventDeduplicator:
    """Remembers webhook event identities for a bounded window."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = settings.webhook_dedup_ttl_seconds):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def first_seen(self, identity: str) -> bool:
        """Return True the first time an identity is offered within the window."""
        return bool(self.client.set(f"{_WEBHOOK_SEEN_PREFIX}{identity}", "1", nx=True, ex=self.ttl_seconds))

    def forget(self, identity: str) -> None:
        """Drop an identity so a redelivery is processed again (used after a failure)."""
        self.client.delete(f"{_WEBHOOK_SEEN_PREFIX}{identity}")


# ─── Remote API daily budget ──────────────────────────────────────────────────

_DAILY_CALLS_PREFIX = "ledger_api_daily:"
_DAILY_WINDOW_SECONDS = 24 * 60 * 60


class DailyCallBudget:
    """Counts remote API calls per tenant per UTC day."""

    def __init__(self, client: redis.Redis, tenant_id: str, limit: int = settings.ledger_daily_call_limit):
        self.client = client
        self.tenant_id = tenant_id
        self.limit = limit

    def _key(self) -> str:
        today = datetime.now(timezone.utc).date().isoformat()
        return f"{_DAILY_CALLS_PREFIX}{self.tenant_id}:{today}"

    def consume(self) -> bool:
        """Reserve one call. Returns False (and reserves nothing) once the limit is hit."""
        key = self._key()
        try:
            count = self.client.incr(key)
            if count == 1:
                # First call of the day: start the window
                self.client.expire(key, _DAILY_WINDOW_SECONDS)
            if count > self.limit:
                self.client.decr(key)
                return False
        except redis.RedisError as exc:
            logger.warning("Daily call budget unavailable, allowing call: %s", exc)
        return True

    def used(self) -> int:
        count = self.client.get(self._key())
        return int(count) if count else 0


# ─── Remote API per-minute allowance ──────────────────────────────────────────

_MINUTE_NAMESPACE = "ledger_api_minute"


class MinuteCallLimit:
    """Moving one-minute window of remote calls per tenant, shared by every worker."""

    def __init__(
        self,
        tenant_id: str,
        per_minute: int = settings.ledger_calls_per_minute,
        limiter: MovingWindowRateLimiter | None = None,
        sleep=time.sleep,
        clock=time.time,
    ):
        self.tenant_id = tenant_id
        self.item = RateLimitItemPerMinute(per_minute)
        self.limiter = limiter or MovingWindowRateLimiter(RedisStorage(settings.redis_url))
        self._sleep = sleep
        self._clock = clock

    def wait_turn(self) -> float:
        """Block until the window has room for one more call. Returns the seconds waited."""
        waited = 0.0
        while True:
            try:
                if self.limiter.hit(self.item, _MINUTE_NAMESPACE, self.tenant_id):
                    return waited
                reset_at, _ = self.limiter.get_window_stats(self.item, _MINUTE_NAMESPACE, self.tenant_id)
            except redis.RedisError as exc:
                logger.warning("Per-minute call limit unavailable, allowing call: %s", exc)
                return waited
            delay = max(reset_at - self._clock(), 0.1)
            logger.info("Tenant %s at %s, waiting %.1fs", self.tenant_id, self.item, delay)
            self._sleep(delay)
            waited += delay
