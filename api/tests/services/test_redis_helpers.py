from unittest.mock import MagicMock

import redis
from limits import RateLimitItemPerMinute
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from app.core.redis import DailyCallBudget, MinuteCallLimit, RedisEventDeduplicator
from app.services.progress import ProgressCache, progress_key


class TestDailyCallBudget:
    def test_first_call_of_the_day_starts_the_window(self):
        client = MagicMock()
        client.incr.return_value = 1
        assert DailyCallBudget(client, "tenant-1", limit=5).consume() is True
        key = client.incr.call_args.args[0]
        assert key.startswith("ledger_api_daily:tenant-1:")
        client.expire.assert_called_once_with(key, 86400)

    def test_over_limit_is_refused_and_released(self):
        client = MagicMock()
        client.incr.return_value = 6
        assert DailyCallBudget(client, "tenant-1", limit=5).consume() is False
        client.decr.assert_called_once()
        client.expire.assert_not_called()

    def test_used(self):
        client = MagicMock()
        client.get.return_value = "42"
        assert DailyCallBudget(client, "tenant-1").used() == 42
        client.get.return_value = None
        assert DailyCallBudget(client, "tenant-1").used() == 0

    def test_redis_outage_allows_the_call(self):
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError("redis down")
        assert DailyCallBudget(client, "tenant-1", limit=5).consume() is True


class TestEventDeduplicator:
    def test_first_seen_uses_set_nx_with_ttl(self):
        client = MagicMock()
        client.set.return_value = True
        dedup = RedisEventDeduplicator(client, ttl_seconds=60)
        assert dedup.first_seen("t:INVOICE:inv-1:UPDATE:7") is True
        client.set.assert_called_once_with("webhook_seen:t:INVOICE:inv-1:UPDATE:7", "1", nx=True, ex=60)

    def test_repeat_is_not_first_seen(self):
        client = MagicMock()
        client.set.return_value = None
        assert RedisEventDeduplicator(client).first_seen("x") is False

    def test_forget_deletes_key(self):
        client = MagicMock()
        RedisEventDeduplicator(client).forget("x")
        client.delete.assert_called_once_with("webhook_seen:x")


class TestProgressCache:
    def test_round_trip_with_ttl(self):
        client = MagicMock()
        cache = ProgressCache(client)
        cache.put("job-1", {"percentage": 40}, ttl_seconds=3600)
        key, raw = client.set.call_args.args
        assert key == progress_key("job-1") == "sync_progress:job-1"
        assert client.set.call_args.kwargs == {"ex": 3600}

        client.get.return_value = raw
        assert cache.get("job-1") == {"percentage": 40}

    def test_redis_outage_degrades_to_no_detail(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")
        cache = ProgressCache(client)
        cache.put("job-1", {"percentage": 40}, ttl_seconds=60)
        assert cache.get("job-1") is None


class TestMinuteCallLimit:
    def test_calls_within_the_window_do_not_wait(self):
        sleeps = []
        limiter = MovingWindowRateLimiter(MemoryStorage())
        minute = MinuteCallLimit("tenant-1", per_minute=2, limiter=limiter, sleep=sleeps.append)

        assert minute.wait_turn() == 0.0
        assert minute.wait_turn() == 0.0
        assert sleeps == []
        assert limiter.test(RateLimitItemPerMinute(2), "ledger_api_minute", "tenant-1") is False

    def test_full_window_waits_until_reset(self):
        sleeps = []
        limiter = MagicMock()
        limiter.hit.side_effect = [False, True]
        limiter.get_window_stats.return_value = (112.5, 0)
        minute = MinuteCallLimit(
            "tenant-1", per_minute=60, limiter=limiter, sleep=sleeps.append, clock=lambda: 100.0,
        )

        assert minute.wait_turn() == 12.5
        assert sleeps == [12.5]
        assert limiter.hit.call_args.args[1:] == ("ledger_api_minute", "tenant-1")

    def test_redis_outage_allows_the_call(self):
        limiter = MagicMock()
        limiter.hit.side_effect = redis.ConnectionError("redis down")
        sleeps = []
        minute = MinuteCallLimit("tenant-1", limiter=limiter, sleep=sleeps.append)
        assert minute.wait_turn() == 0.0
        assert sleeps == []
