"""Sync job tracking.

Two stores with different guarantees:

    SyncJob (database)   durable: did the sync run, and how did it end
    progress (Redis)     ephemeral: percentage and current step for polling UIs

Progress entries expire after an hour without updates and linger briefly once
a job finishes. Losing them only degrades what a poller sees; a running job
whose progress is gone still reports as in progress.
"""

import json
import logging
import uuid
from typing import Any

import redis
import redis.asyncio as aioredis

from app.core.config import settings
from app.models.sync_job import (
    CANCELLED, FAILED, INCREMENTAL, PENDING, RUNNING, SUCCEEDED, SyncJob,
)
from app.services.entity_kinds import ordered_kinds
from app.services.store import LedgerStore, SyncScope, utcnow

logger = logging.getLogger(__name__)

_PROGRESS_PREFIX = "sync_progress:"
SWEEP_STEP = "sweep"

STEP_PENDING = "pending"
STEP_IN_PROGRESS = "in_progress"
STEP_DONE = "done"

DETAIL_UNAVAILABLE = "Progress detail unavailable"


def progress_key(job_id: uuid.UUID | str) -> str:
    return f"{_PROGRESS_PREFIX}{job_id}"


# ─── Ephemeral cache ──────────────────────────────────────────────────────────

class ProgressCache:
    """Blocking Redis-backed progress cache for the Celery side."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def get(self, job_id: uuid.UUID | str) -> dict | None:
        try:
            raw = self.client.get(progress_key(job_id))
        except redis.RedisError as exc:
            logger.warning("Progress cache unavailable reading %s: %s", job_id, exc)
            return None
        return json.loads(raw) if raw else None

    def put(self, job_id: uuid.UUID | str, progress: dict, ttl_seconds: int) -> None:
        try:
            self.client.set(progress_key(job_id), json.dumps(progress), ex=ttl_seconds)
        except redis.RedisError as exc:
            # Advisory only: the durable job row carries the outcome
            logger.warning("Progress cache unavailable writing %s: %s", job_id, exc)


class AsyncProgressCache:
    """Read side used by the API."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, job_id: uuid.UUID | str) -> dict | None:
        try:
            raw = await self.client.get(progress_key(job_id))
        except redis.RedisError as exc:
            logger.warning("Progress cache unavailable reading %s: %s", job_id, exc)
            return None
        return json.loads(raw) if raw else None


# ─── Views ────────────────────────────────────────────────────────────────────

def _empty_steps(steps: list[str]) -> dict[str, dict]:
    return {step: {"status": STEP_PENDING, "count": 0} for step in steps}


def runs_sweep(sync_type: str) -> bool:
    return sync_type != INCREMENTAL or settings.sweep_on_incremental


def plan_steps(sync_type: str, kinds: list[str] | None) -> list[str]:
    """Step names of a job: one per entity kind in sync order, then the sweep when it runs."""
    steps = [kind.name for kind in ordered_kinds(kinds)]
    if runs_sweep(sync_type):
        steps.append(SWEEP_STEP)
    return steps


def build_progress_view(job: SyncJob, cached: dict | None) -> dict[str, Any]:
    """Combine the durable job with whatever live progress is cached."""
    base = {
        "job_id": str(job.id),
        "sync_type": job.sync_type,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }

    if job.status in (PENDING, RUNNING):
        if cached:
            return {
                **base,
                "status": "in_progress",
                "steps": cached.get("steps", {}),
                "current_step": cached.get("current_step"),
                "percentage": cached.get("percentage", 0),
                "detail_available": True,
            }
        return {
            **base,
            "status": "in_progress",
            "steps": _empty_steps(plan_steps(job.sync_type, job.kinds)),
            "current_step": DETAIL_UNAVAILABLE,
            "percentage": 0,
            "detail_available": False,
        }

    return {
        **base,
        "status": job.status,
        "steps": cached.get("steps", {}) if cached else {},
        "current_step": None,
        "percentage": 100 if job.status == SUCCEEDED else (cached or {}).get("percentage", 0),
        "detail_available": cached is not None,
        "records_created": job.records_created,
        "records_updated": job.records_updated,
        "records_removed": job.records_removed,
        "error_message": job.error_message,
    }


# ─── Tracker ──────────────────────────────────────────────────────────────────

class SyncJobTracker:
    def __init__(
        self,
        store: LedgerStore,
        cache: ProgressCache,
        ttl_seconds: int = settings.sync_progress_ttl_seconds,
        linger_seconds: int = settings.sync_progress_linger_seconds,
    ):
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.linger_seconds = linger_seconds
        self._progress: dict[str, dict] = {}

    def _initial(self, job: SyncJob, steps: list[str], label: str) -> dict:
        return {
            "job_id": str(job.id),
            "status": job.status,
            "steps": _empty_steps(steps),
            "percentage": 0,
            "current_step": label,
            "updated_at": utcnow().isoformat(),
        }

    def read_progress(self, job_id: uuid.UUID) -> dict[str, Any] | None:
        job = self.store.get_job(job_id)
        if job is None:
            return None
        return build_progress_view(job, self.cache.get(job_id))

    def _write(self, job_id: uuid.UUID, progress: dict, ttl_seconds: int | None = None) -> None:
        progress["updated_at"] = utcnow().isoformat()
        self._progress[str(job_id)] = progress
        self.cache.put(job_id, progress, ttl_seconds or self.ttl_seconds)

    def _current(self, job_id: uuid.UUID, steps: list[str] | None = None) -> dict:
        progress = self._progress.get(str(job_id)) or self.cache.get(job_id)
        if progress is None:
            progress = {
                "job_id": str(job_id),
                "status": RUNNING,
                "steps": _empty_steps(steps or []),
                "percentage": 0,
                "current_step": None,
            }
        return progress

    def enqueue(self, sync_type: str, kinds: list[str], scope: SyncScope, steps: list[str]) -> uuid.UUID:
        """Record a job that a worker will pick up later."""
        job = self.store.create_job(sync_type, kinds, scope, status=PENDING)
        self.store.commit()
        self._write(job.id, self._initial(job, steps, "Queued"))
        logger.info("Sync job %s queued (%s: %s)", job.id, sync_type, ", ".join(kinds))
        return job.id

    def start(self, sync_type: str, kinds: list[str], scope: SyncScope, steps: list[str]) -> uuid.UUID:
        """Record a job that starts running immediately."""
        job = self.store.create_job(sync_type, kinds, scope, status=RUNNING)
        self.store.commit()
        self._write(job.id, self._initial(job, steps, "Starting"))
        logger.info("Sync job %s started (%s: %s)", job.id, sync_type, ", ".join(kinds))
        return job.id

    def begin(self, job_id: uuid.UUID, steps: list[str]) -> bool:
        """Move a queued job to running. Returns False if it is no longer pending."""
        moved = self.store.update_job(
            job_id, from_statuses=(PENDING,), status=RUNNING, started_at=utcnow()
        )
        self.store.commit()
        if moved:
            progress = self._current(job_id, steps)
            progress["status"] = RUNNING
            progress["current_step"] = "Starting"
            self._write(job_id, progress)
            logger.info("Sync job %s running", job_id)
        return moved

    def update(
        self,
        job_id: uuid.UUID,
        step: str,
        step_status: str,
        count: int = 0,
        label: str | None = None,
    ) -> dict:
        """Record a step transition; percentage = share of steps done, never decreasing."""
        progress = self._current(job_id)
        steps = progress.setdefault("steps", {})
        steps[step] = {"status": step_status, "count": count}

        done = sum(1 for s in steps.values() if s["status"] == STEP_DONE)
        computed = min(int(done * 100 / len(steps)), 99) if steps else 0  # 100 is set by finish()
        progress["percentage"] = max(progress.get("percentage", 0), computed)
        progress["current_step"] = label or step
        self._write(job_id, progress)
        return progress

    def finish(
        self,
        job_id: uuid.UUID,
        status: str,
        created: int = 0,
        updated: int = 0,
        removed: int = 0,
        error_message: str | None = None,
    ) -> bool:
        """Write the terminal job state. Only the first call for a job has any effect."""
        if status not in (SUCCEEDED, FAILED, CANCELLED):
            raise ValueError(f"Not a terminal status: {status}")
        written = self.store.finish_job(
            job_id, status, created=created, updated=updated, removed=removed,
            error_message=error_message,
        )
        self.store.commit()
        if not written:
            logger.warning("Sync job %s already finished; ignoring %s", job_id, status)
            return False

        progress = self._current(job_id)
        progress["status"] = status
        progress["current_step"] = None
        if status == SUCCEEDED:
            progress["percentage"] = 100
        self._write(job_id, progress, ttl_seconds=self.linger_seconds)
        self._progress.pop(str(job_id), None)

        log = logger.info if status == SUCCEEDED else logger.warning
        log(
            "Sync job %s %s: %d created, %d updated, %d removed%s",
            job_id, status, created, updated, removed,
            f" ({error_message})" if error_message else "",
        )
        return True
