"""Rate-limited client for the remote ledger API.

Every remote call goes through ``RemoteClient.call``: HTTP 429 honours the
``Retry-After`` header (falling back to exponential backoff), 5xx responses
and transport errors back off exponentially, and after ``max_attempts`` the
call fails with ``RemoteUnavailable``. Retry state lives in the call itself,
so one client can serve concurrent sync and webhook work.

Worker clients are also metered in Redis: a moving one-minute window per
tenant delays calls before the remote starts answering 429, and a daily
budget refuses them once spent.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime

import requests
from requests.adapters import BaseAdapter

from app.core.config import settings
from app.core.exceptions import RemoteRequestError, RemoteUnavailable
from app.core.redis import DailyCallBudget, MinuteCallLimit, get_sync_redis
from app.services.entity_kinds import EntityKind

logger = logging.getLogger(__name__)

RATE_LIMITED = 429


@dataclass
class RemotePage:
    items: list[dict]
    count: int


def _retry_after_seconds(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class RemoteClient:
    def __init__(
        self,
        base_url: str = settings.ledger_api_url,
        tenant_id: str = settings.ledger_tenant_id,
        access_token: str = settings.ledger_access_token,
        *,
        max_attempts: int = settings.ledger_max_attempts,
        backoff_base: float = settings.ledger_backoff_base_seconds,
        timeout: float = settings.ledger_request_timeout_seconds,
        adapter: BaseAdapter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        budget=None,
        minute_limit=None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.tenant_id = tenant_id
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._budget = budget  # optional DailyCallBudget
        self._minute_limit = minute_limit  # optional MinuteCallLimit
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = requests.Session()
        self._http.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Tenant-Id": tenant_id,
            "Accept": "application/json",
        })
        if adapter is not None:
            self._http.mount(self.base_url, adapter)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _backoff(self, attempt: int) -> float:
        return self.backoff_base * (2 ** (attempt - 1))

    def call(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        """Perform one remote request with rate-limit and transient-error retries."""
        last_error: Exception | None = None
        last_status: int | None = None

        for attempt in range(1, self.max_attempts + 1):
            if self._minute_limit is not None:
                self._minute_limit.wait_turn()
            if self._budget is not None and not self._budget.consume():
                raise RemoteUnavailable(
                    f"Daily API call limit reached for tenant {self.tenant_id}"
                )

            delay: float | None = None
            try:
                response = self._http.request(
                    method, self.base_url + path, params=params, headers=headers, timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error, last_status = exc, None
                delay = self._backoff(attempt)
                logger.warning(
                    "%s %s failed (attempt %d/%d): %s", method, path, attempt, self.max_attempts, exc
                )
            else:
                if response.status_code == RATE_LIMITED:
                    last_error, last_status = None, RATE_LIMITED
                    retry_after = _retry_after_seconds(response)
                    delay = retry_after if retry_after is not None else self._backoff(attempt)
                    logger.warning(
                        "%s %s rate limited (attempt %d/%d), retry in %.1fs",
                        method, path, attempt, self.max_attempts, delay,
                    )
                elif response.status_code >= 500:
                    last_error, last_status = None, response.status_code
                    delay = self._backoff(attempt)
                    logger.warning(
                        "%s %s returned %d (attempt %d/%d)",
                        method, path, response.status_code, attempt, self.max_attempts,
                    )
                else:
                    return response

            if attempt < self.max_attempts:
                self._sleep(delay)

        detail = str(last_error) if last_error is not None else f"HTTP {last_status}"
        logger.error("%s %s gave up after %d attempts: %s", method, path, self.max_attempts, detail)
        raise RemoteUnavailable(
            f"{method} {path} failed after {self.max_attempts} attempts: {detail}",
            last_error=last_error,
            status=last_status,
        )

    def _json(self, response: requests.Response, path: str) -> dict:
        if response.status_code >= 400:
            raise RemoteRequestError(
                f"GET {path} rejected with HTTP {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )
        return response.json()

    # ─── Ledger operations ────────────────────────────────────────────────────

    def list_page(
        self,
        kind: EntityKind,
        page: int,
        page_size: int,
        *,
        since: datetime | None = None,
        where: str | None = None,
    ) -> RemotePage:
        """Fetch one page of a kind's listing."""
        params: dict = {"page": page, "pageSize": page_size}
        if where:
            params["where"] = where
        headers = {}
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            headers["If-Modified-Since"] = format_datetime(since.astimezone(timezone.utc), usegmt=True)

        path = f"/{kind.resource}"
        body = self._json(self.call("GET", path, params=params, headers=headers), path)
        items = body.get(kind.resource) or []
        return RemotePage(items=items, count=len(items))

    def get_resource(self, resource: str, remote_id: str) -> dict | None:
        """Fetch a single record of any resource. Returns None when the remote has no such record."""
        path = f"/{resource}/{remote_id}"
        response = self.call("GET", path)
        if response.status_code == 404:
            return None
        items = self._json(response, path).get(resource) or []
        return items[0] if items else None

    def get_one(self, kind: EntityKind, remote_id: str) -> dict | None:
        return self.get_resource(kind.resource, remote_id)


def build_client() -> RemoteClient:
    """Client for worker tasks, metered against the tenant's per-minute and daily allowances."""
    return RemoteClient(
        budget=DailyCallBudget(get_sync_redis(), settings.ledger_tenant_id),
        minute_limit=MinuteCallLimit(settings.ledger_tenant_id),
    )
