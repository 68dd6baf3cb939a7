"""Ledger sync orchestration. Idempotent and resumable by re-running.

A sync job walks the entity kinds in dependency order (accounts before the
transactions that reference them), pulls every page through the rate-limited
client, reconciles each page into the local store, then runs the deletion
sweep. Incremental jobs only ask for records modified since the last
successful run and skip the sweep unless configured otherwise.

Failures never roll back what was already reconciled: the local store only
ever moves toward the remote state seen so far.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import partial

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import (
    RemoteError, ScopeTooLarge, SyncAlreadyRunning, SyncCancelled, SyncJobNotFound,
)
from app.core.redis import get_sync_redis
from app.models.sync_job import (
    CANCELLED, FAILED, FULL, INCREMENTAL, SUCCEEDED, SYNC_TYPES,
    TARGETED, SyncJob,
)
from app.services.entity_kinds import SYNC_ORDER, EntityKind, ordered_kinds
from app.services.pagination import fetch_pages
from app.services.progress import (
    STEP_DONE, STEP_IN_PROGRESS, SWEEP_STEP, ProgressCache, SyncJobTracker,
    plan_steps, runs_sweep,
)
from app.services.reconciler import Reconciler, ReconcileResult
from app.services.remote_client import RemoteClient, build_client
from app.services.store import LedgerStore, SyncScope, ensure_aware, utcnow
from app.services.sweep import DeletionSweep
from app.worker import celery_app

logger = logging.getLogger(__name__)


@dataclass
class SyncTotals:
    created: int = 0
    updated: int = 0
    removed: int = 0


# ─── Job creation (shared by the API and the scheduler) ───────────────────────

def resolve_kinds(sync_type: str, kinds: list[str] | None) -> list[str]:
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"Unknown sync type: {sync_type}")
    if sync_type == TARGETED and not kinds:
        raise ValueError("A targeted sync needs at least one entity kind")
    if sync_type != TARGETED or not kinds:
        return list(SYNC_ORDER)
    return [kind.name for kind in ordered_kinds(kinds)]


def validate_scope(since: date | None, max_days: int = settings.sync_max_scope_days) -> SyncScope:
    if since is not None:
        oldest = utcnow().date() - timedelta(days=max_days)
        if since < oldest:
            raise ScopeTooLarge(
                f"Scope starting {since.isoformat()} exceeds the {max_days}-day limit; "
                f"use a date on or after {oldest.isoformat()}"
            )
    return SyncScope(since=since)


def abandon_stale_jobs(store: LedgerStore, timeout_minutes: int = settings.sync_job_timeout_minutes) -> int:
    """Fail active jobs that stopped making progress (worker died, task lost)."""
    cutoff = utcnow() - timedelta(minutes=timeout_minutes)
    abandoned = 0
    for job in store.active_jobs():
        last_seen = ensure_aware(job.started_at or job.created_at)
        if last_seen is not None and last_seen < cutoff:
            if store.finish_job(
                job.id, FAILED,
                error_message=f"Abandoned: no completion within {timeout_minutes} minutes",
            ):
                logger.warning("Abandoned stale sync job %s", job.id)
                abandoned += 1
    return abandoned


def check_can_start(
    store: LedgerStore,
    sync_type: str,
    kinds: list[str] | None = None,
    since: date | None = None,
) -> tuple[list[str], SyncScope]:
    """Validate a sync request against the active jobs. Returns the resolved kinds and scope."""
    resolved = resolve_kinds(sync_type, kinds)
    scope = validate_scope(since)

    abandon_stale_jobs(store)
    running = store.active_jobs()
    if running:
        raise SyncAlreadyRunning(f"Sync job {running[0].id} is still {running[0].status}")
    return resolved, scope


def create_pending_job(
    store: LedgerStore,
    sync_type: str,
    kinds: list[str] | None = None,
    since: date | None = None,
) -> SyncJob:
    """Validate a sync request and record it as a pending job (caller commits)."""
    resolved, scope = check_can_start(store, sync_type, kinds, since)
    job = store.create_job(sync_type, resolved, scope)
    logger.info("Queued %s sync job %s (%s)", sync_type, job.id, ", ".join(resolved))
    return job


# ─── Orchestrator ─────────────────────────────────────────────────────────────

class SyncOrchestrator:
    def __init__(
        self,
        client: RemoteClient,
        store: LedgerStore,
        tracker: SyncJobTracker,
        page_size: int = settings.ledger_page_size,
        max_pages: int | None = settings.sync_max_pages,
        default_sweep_days: int = settings.sync_default_sweep_days,
    ):
        self.client = client
        self.store = store
        self.tracker = tracker
        self.page_size = page_size
        self.max_pages = max_pages
        self.default_sweep_days = default_sweep_days
        self.reconciler = Reconciler(store)
        self.sweeper = DeletionSweep(client, store, page_size=page_size, max_pages=max_pages)

    def run_new(
        self,
        sync_type: str,
        kinds: list[str] | None = None,
        since: date | None = None,
    ) -> SyncJob:
        """Create a running job and execute it in this process."""
        resolved = resolve_kinds(sync_type, kinds)
        scope = validate_scope(since)
        job_id = self.tracker.start(sync_type, resolved, scope, plan_steps(sync_type, resolved))
        return self._execute(job_id, sync_type, resolved, scope)

    def run(self, job_id: uuid.UUID) -> SyncJob:
        """Execute a job created earlier by ``create_pending_job``."""
        job = self.store.get_job(job_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        if not self.tracker.begin(job_id, plan_steps(job.sync_type, job.kinds)):
            logger.info("Sync job %s is %s, not pending; skipping", job_id, job.status)
            return self.store.get_job(job_id)
        return self._execute(job_id, job.sync_type, list(job.kinds), SyncScope(job.scope_since))

    # ─── Steps ────────────────────────────────────────────────────────────────

    def _modified_since(self, sync_type: str) -> datetime | None:
        if sync_type != INCREMENTAL:
            return None
        last = self.store.latest_successful_job((FULL, INCREMENTAL))
        if last is None or last.started_at is None:
            logger.info("No previous successful sync; incremental runs as a full pull")
            return None
        return ensure_aware(last.started_at)

    def _sweep_scope(self, scope: SyncScope) -> SyncScope:
        if scope.since is not None:
            return scope
        return SyncScope(since=utcnow().date() - timedelta(days=self.default_sweep_days))

    def _check_cancelled(self, job_id: uuid.UUID) -> None:
        if self.store.is_cancel_requested(job_id):
            raise SyncCancelled(f"Sync job {job_id} cancelled")

    def _sync_kind(
        self,
        job_id: uuid.UUID,
        kind: EntityKind,
        scope: SyncScope,
        modified_since: datetime | None,
    ) -> ReconcileResult:
        self.tracker.update(job_id, kind.name, STEP_IN_PROGRESS, 0, label=f"Syncing {kind.name}")
        list_operation = partial(
            self._list_page, kind, since=modified_since, where=kind.scope_filter(scope.since)
        )
        result = ReconcileResult()
        for items in fetch_pages(list_operation, self.page_size, self.max_pages):
            result += self.reconciler.reconcile(kind, items)
            self.tracker.update(job_id, kind.name, STEP_IN_PROGRESS, result.total)
        self.tracker.update(job_id, kind.name, STEP_DONE, result.total)
        logger.info(
            "Synced %s: %d created, %d updated, %d unchanged",
            kind.name, result.created, result.updated, result.unchanged,
        )
        return result

    def _list_page(self, kind: EntityKind, page: int, page_size: int, *, since, where):
        return self.client.list_page(kind, page, page_size, since=since, where=where)

    def _execute(
        self,
        job_id: uuid.UUID,
        sync_type: str,
        kinds: list[str],
        scope: SyncScope,
    ) -> SyncJob:
        totals = SyncTotals()
        try:
            modified_since = self._modified_since(sync_type)
            kind_list = ordered_kinds(kinds)

            for kind in kind_list:
                self._check_cancelled(job_id)
                result = self._sync_kind(job_id, kind, scope, modified_since)
                totals.created += result.created
                totals.updated += result.updated

            if runs_sweep(sync_type):
                self._check_cancelled(job_id)
                sweep_scope = self._sweep_scope(scope)
                self.tracker.update(job_id, SWEEP_STEP, STEP_IN_PROGRESS, 0, label="Checking for deletions")
                for kind in kind_list:
                    totals.removed += self.sweeper.sweep(kind, sweep_scope).removed
                self.tracker.update(job_id, SWEEP_STEP, STEP_DONE, totals.removed)

        except SyncCancelled:
            self.store.rollback()
            self.tracker.finish(job_id, CANCELLED, totals.created, totals.updated, totals.removed)
        except (RemoteError, ScopeTooLarge) as exc:
            self.store.rollback()
            self.tracker.finish(
                job_id, FAILED, totals.created, totals.updated, totals.removed,
                error_message=str(exc),
            )
        except Exception as exc:
            # Store errors are outside this engine's control: record and propagate
            self.store.rollback()
            self.tracker.finish(
                job_id, FAILED, totals.created, totals.updated, totals.removed,
                error_message=f"{type(exc).__name__}: {exc}",
            )
            raise
        else:
            self.tracker.finish(job_id, SUCCEEDED, totals.created, totals.updated, totals.removed)

        return self.store.get_job(job_id)


# ─── Wiring ───────────────────────────────────────────────────────────────────

def build_orchestrator(session, client: RemoteClient) -> SyncOrchestrator:
    store = LedgerStore(session)
    tracker = SyncJobTracker(store, ProgressCache(get_sync_redis()))
    return SyncOrchestrator(client, store, tracker)


# ─── Celery tasks ─────────────────────────────────────────────────────────────

@celery_app.task(name="app.services.sync.run_sync_job")
def run_sync_job(job_id: str) -> dict:
    """Execute one queued sync job (enqueued by the API or the scheduler)."""
    logger.info("Running sync job %s", job_id)
    with SessionLocal() as session, build_client() as client:
        job = build_orchestrator(session, client).run(uuid.UUID(job_id))
        return {
            "job_id": str(job.id),
            "status": job.status,
            "created": job.records_created,
            "updated": job.records_updated,
            "removed": job.records_removed,
            "error_message": job.error_message,
        }


@celery_app.task(name="app.services.sync.scheduled_sync")
def scheduled_sync(sync_type: str = INCREMENTAL) -> dict | None:
    """Beat entry point: queue a job unless one is already active, then run it."""
    with SessionLocal() as session:
        store = LedgerStore(session)
        tracker = SyncJobTracker(store, ProgressCache(get_sync_redis()))
        try:
            kinds, scope = check_can_start(store, sync_type)
            job_id = tracker.enqueue(sync_type, kinds, scope, plan_steps(sync_type, kinds))
        except SyncAlreadyRunning as exc:
            store.commit()  # keep any stale-job abandonment
            logger.info("Scheduled %s sync skipped: %s", sync_type, exc)
            return None
    return run_sync_job(str(job_id))
