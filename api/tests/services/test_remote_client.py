"""Retry, rate-limit and request-shape behaviour of RemoteClient."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import redis
import requests

from app.core.exceptions import RemoteRequestError, RemoteUnavailable
from app.core.redis import DailyCallBudget
from app.services.entity_kinds import get_kind
from app.services.remote_client import RemoteClient
from fakes import BASE_URL, HandlerAdapter, invoice, response


def _ok(resource: str = "Invoices", items: list | None = None) -> requests.Response:
    return response(200, {resource: items or []})


class FakeBudget:
    def __init__(self, allowed: int):
        self.allowed = allowed
        self.consumed = 0

    def consume(self) -> bool:
        if self.consumed >= self.allowed:
            return False
        self.consumed += 1
        return True


# ── Retries ──────────────────────────────────────────────────────────────────

class TestRetries:
    def test_rate_limited_twice_then_ok_honours_retry_after(self, client, remote, sleeps):
        remote.scripted = [
            response(429, headers={"Retry-After": "7"}),
            response(429, headers={"Retry-After": "3"}),
            _ok(),
        ]
        resp = client.call("GET", "/Invoices")
        assert resp.status_code == 200
        assert sleeps == [7.0, 3.0]

    def test_rate_limit_without_header_backs_off_exponentially(self, client, remote, sleeps):
        remote.scripted = [response(429), response(429), _ok()]
        client.call("GET", "/Invoices")
        assert sleeps == [1.0, 2.0]

    def test_persistent_rate_limit_gives_up_after_max_attempts(self, client, remote, sleeps):
        remote.scripted = [response(429) for _ in range(5)]
        with pytest.raises(RemoteUnavailable) as exc_info:
            client.call("GET", "/Invoices")
        assert exc_info.value.status == 429
        # three attempts, no sleep after the last one
        assert len(remote.requests) == 3
        assert sleeps == [1.0, 2.0]
        assert sum(sleeps) <= 1.0 * (2 ** 3 - 1)

    def test_server_errors_are_retried(self, client, remote, sleeps):
        remote.scripted = [response(503), _ok()]
        assert client.call("GET", "/Invoices").status_code == 200
        assert sleeps == [1.0]

    def test_transport_errors_are_retried_then_surface(self, sleeps):
        def broken(request):
            raise requests.ConnectionError("connection refused")

        with RemoteClient(
            BASE_URL, "tenant-1", "token",
            max_attempts=2, backoff_base=0.5,
            adapter=HandlerAdapter(broken), sleep=sleeps.append,
        ) as client:
            with pytest.raises(RemoteUnavailable) as exc_info:
                client.call("GET", "/Invoices")
        assert isinstance(exc_info.value.last_error, requests.ConnectionError)
        assert sleeps == [0.5]

    def test_client_errors_are_not_retried(self, client, remote, sleeps):
        remote.scripted = [response(400, {"Message": "bad where"})]
        with pytest.raises(RemoteRequestError) as exc_info:
            client.list_page(get_kind("invoice"), 1, 100)
        assert exc_info.value.status == 400
        assert len(remote.requests) == 1
        assert sleeps == []

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RemoteClient(BASE_URL, "t", "x", max_attempts=0)


# ── Daily budget ─────────────────────────────────────────────────────────────

class TestDailyBudget:
    def test_exhausted_budget_fails_without_a_request(self, remote, sleeps):
        budget = FakeBudget(allowed=1)
        with RemoteClient(
            BASE_URL, "tenant-1", "token",
            adapter=remote.adapter(), sleep=sleeps.append, budget=budget,
        ) as client:
            client.call("GET", "/Invoices")
            with pytest.raises(RemoteUnavailable, match="Daily API call limit"):
                client.call("GET", "/Invoices")
        assert len(remote.requests) == 1

    def test_each_retry_consumes_budget(self, remote, sleeps):
        budget = FakeBudget(allowed=10)
        remote.scripted = [response(500), _ok()]
        with RemoteClient(
            BASE_URL, "tenant-1", "token",
            adapter=remote.adapter(), sleep=sleeps.append, budget=budget,
        ) as client:
            client.call("GET", "/Invoices")
        assert budget.consumed == 2

    def test_budget_backed_by_an_unreachable_redis_still_calls_remote(self, remote, sleeps):
        redis_client = MagicMock()
        redis_client.incr.side_effect = redis.ConnectionError("redis down")
        with RemoteClient(
            BASE_URL, "tenant-1", "token",
            adapter=remote.adapter(), sleep=sleeps.append,
            budget=DailyCallBudget(redis_client, "tenant-1"),
        ) as client:
            assert client.call("GET", "/Invoices").status_code == 200
        assert len(remote.requests) == 1

    def test_every_attempt_waits_for_the_minute_window(self, remote, sleeps):
        minute_limit = MagicMock()
        remote.scripted = [response(503), _ok()]
        with RemoteClient(
            BASE_URL, "tenant-1", "token",
            adapter=remote.adapter(), sleep=sleeps.append, minute_limit=minute_limit,
        ) as client:
            client.call("GET", "/Invoices")
        assert minute_limit.wait_turn.call_count == 2


# ── Ledger operations ────────────────────────────────────────────────────────

class TestLedgerOperations:
    def test_list_page_sends_paging_filter_and_modified_since(self, client, remote):
        since = datetime(2026, 10, 1, 8, 30, tzinfo=timezone.utc)
        client.list_page(get_kind("invoice"), 2, 50, since=since, where='Status=="PAID"')

        request = remote.requests[0]
        assert request.path.endswith("/Invoices")
        assert request.params["page"] == "2"
        assert request.params["pageSize"] == "50"
        assert request.params["where"] == 'Status=="PAID"'
        assert request.headers["If-Modified-Since"] == "Thu, 01 Oct 2026 08:30:00 GMT"
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.headers["Tenant-Id"] == "tenant-1"

    def test_list_page_returns_items_and_count(self, client, remote):
        remote.add("Invoices", invoice("inv-1"), invoice("inv-2"))
        page = client.list_page(get_kind("invoice"), 1, 100)
        assert page.count == 2
        assert [i["InvoiceID"] for i in page.items] == ["inv-1", "inv-2"]

    def test_get_one_returns_none_on_404(self, client):
        assert client.get_one(get_kind("invoice"), "missing") is None

    def test_get_one_returns_the_record(self, client, remote):
        remote.add("Invoices", invoice("inv-1"))
        assert client.get_one(get_kind("invoice"), "inv-1")["InvoiceID"] == "inv-1"
