"""Local store primitives shared by every writer.

Bulk sync, the deletion sweep and webhook refreshes all go through
``upsert`` and ``mark_removed`` so the same consistency rule applies
everywhere: a write lands only when a remote-authoritative field differs and
the incoming data is not older than what is stored. Both are single
statements, so concurrent writers on one key are serialized by the database.

The store never commits on its own; callers decide the transaction boundary.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.core.exceptions import SyncAlreadyRunning
from app.models.ledger import REMOVED
from app.models.sync_job import (
    ACTIVE_STATUSES, PENDING, RUNNING, SUCCEEDED, SyncJob,
)
from app.services.entity_kinds import EntityKind

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes read back from the database as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class SyncScope:
    """Bounds a fetch or sweep to records dated on/after ``since`` (None = everything)."""
    since: date | None = None


class LedgerStore:
    def __init__(self, session: Session):
        self.session = session

    # ─── Transaction control ──────────────────────────────────────────────────

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def _insert(self, table):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(table)
        if dialect == "sqlite":
            return sqlite.insert(table)
        raise NotImplementedError(f"Atomic upsert not available for dialect {dialect!r}")

    # ─── Ledger records ───────────────────────────────────────────────────────

    def upsert(
        self,
        kind: EntityKind,
        remote_id: str,
        status: str,
        fields: dict[str, Any],
        remote_updated_at: datetime | None = None,
    ) -> str:
        """Create or conditionally update one record. Returns created / updated / unchanged."""
        model = kind.model
        table = model.__table__
        values = {
            **fields,
            "remote_id": remote_id,
            "status": status,
            "remote_updated_at": remote_updated_at,
            "last_synced_at": utcnow(),
            "sync_version": 1,
        }
        stmt = self._insert(table).values(**values)
        excluded = stmt.excluded

        compared = ["status", *fields.keys()]
        changed = or_(*(table.c[col].is_distinct_from(excluded[col]) for col in compared))
        not_stale = or_(
            excluded.remote_updated_at.is_(None),
            table.c.remote_updated_at.is_(None),
            excluded.remote_updated_at >= table.c.remote_updated_at,
        )
        update_set = {col: excluded[col] for col in compared}
        update_set["remote_updated_at"] = func.coalesce(
            excluded.remote_updated_at, table.c.remote_updated_at
        )
        update_set["last_synced_at"] = excluded.last_synced_at
        update_set["sync_version"] = table.c.sync_version + 1

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.remote_id],
            set_=update_set,
            where=and_(changed, not_stale),
        ).returning(table.c.sync_version)

        row = self.session.execute(stmt).first()
        if row is None:
            return UNCHANGED
        return CREATED if row[0] == 1 else UPDATED

    def mark_removed(
        self,
        kind: EntityKind,
        remote_id: str,
        synced_before: datetime | None = None,
    ) -> bool:
        """Flag a record as no longer present remotely. Returns False if absent or already removed.

        With ``synced_before``, a record written at or after that instant is left alone.
        """
        model = kind.model
        conditions = [model.remote_id == remote_id, model.status != REMOVED]
        if synced_before is not None:
            conditions.append(
                or_(model.last_synced_at.is_(None), model.last_synced_at < synced_before)
            )
        result = self.session.execute(
            update(model)
            .where(*conditions)
            .values(
                status=REMOVED,
                sync_version=model.sync_version + 1,
                last_synced_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def list_active_ids(
        self,
        kind: EntityKind,
        scope: SyncScope,
        synced_before: datetime | None = None,
    ) -> set[str]:
        """Remote ids of non-removed records of ``kind`` within ``scope``."""
        model = kind.model
        stmt = select(model.remote_id).where(model.status != REMOVED)
        if scope.since is not None and kind.date_column:
            stmt = stmt.where(getattr(model, kind.date_column) >= scope.since)
        if synced_before is not None:
            stmt = stmt.where(
                or_(model.last_synced_at.is_(None), model.last_synced_at < synced_before)
            )
        return set(self.session.execute(stmt).scalars().all())

    def get_record(self, kind: EntityKind, remote_id: str):
        return self.session.execute(
            select(kind.model)
            .where(kind.model.remote_id == remote_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def local_ids(self, kind: EntityKind, remote_ids: set[str]) -> dict[str, uuid.UUID]:
        """Map remote ids to local surrogate ids for parent linkage."""
        if not remote_ids:
            return {}
        model = kind.model
        rows = self.session.execute(
            select(model.remote_id, model.id).where(model.remote_id.in_(remote_ids))
        ).all()
        return {remote_id: local_id for remote_id, local_id in rows}

    # ─── Sync jobs ────────────────────────────────────────────────────────────

    def create_job(
        self,
        sync_type: str,
        kinds: list[str],
        scope: SyncScope,
        status: str = PENDING,
    ) -> SyncJob:
        now = utcnow()
        job = SyncJob(
            sync_type=sync_type,
            kinds=list(kinds),
            scope_since=scope.since,
            status=status,
            cancel_requested=False,
            active_lock=True if status in ACTIVE_STATUSES else None,
            started_at=now if status == RUNNING else None,
            records_created=0,
            records_updated=0,
            records_removed=0,
            created_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(job)
        except IntegrityError:
            # a pending or running job already holds the lock
            raise SyncAlreadyRunning("Another sync job is already pending or running")
        return job

    def get_job(self, job_id: uuid.UUID) -> SyncJob | None:
        return self.session.get(SyncJob, job_id, populate_existing=True)

    def update_job(
        self,
        job_id: uuid.UUID,
        from_statuses: tuple[str, ...] = ACTIVE_STATUSES,
        **values: Any,
    ) -> bool:
        """Update a job whose status is one of ``from_statuses`` (default: not terminal)."""
        result = self.session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def finish_job(
        self,
        job_id: uuid.UUID,
        status: str,
        created: int = 0,
        updated: int = 0,
        removed: int = 0,
        error_message: str | None = None,
    ) -> bool:
        """Write the terminal state. Returns False if the job was already terminal."""
        return self.update_job(
            job_id,
            status=status,
            active_lock=None,
            completed_at=utcnow(),
            records_created=created,
            records_updated=updated,
            records_removed=removed,
            error_message=error_message,
        )

    def _jobs(self, stmt) -> list[SyncJob]:
        # Job rows change through bulk UPDATEs; never serve stale identity-map copies
        return list(self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalars().all())

    def latest_job(self) -> SyncJob | None:
        jobs = self._jobs(select(SyncJob).order_by(SyncJob.created_at.desc()).limit(1))
        return jobs[0] if jobs else None

    def recent_jobs(self, limit: int = 20) -> list[SyncJob]:
        return self._jobs(select(SyncJob).order_by(SyncJob.created_at.desc()).limit(limit))

    def latest_successful_job(self, sync_types: tuple[str, ...]) -> SyncJob | None:
        jobs = self._jobs(
            select(SyncJob)
            .where(SyncJob.status == SUCCEEDED, SyncJob.sync_type.in_(sync_types))
            .order_by(SyncJob.started_at.desc())
            .limit(1)
        )
        return jobs[0] if jobs else None

    def active_jobs(self) -> list[SyncJob]:
        return self._jobs(
            select(SyncJob).where(SyncJob.status.in_(ACTIVE_STATUSES)).order_by(SyncJob.created_at)
        )

    def request_cancel(self, job_id: uuid.UUID) -> bool:
        return self.update_job(job_id, cancel_requested=True)

    def is_cancel_requested(self, job_id: uuid.UUID) -> bool:
        return bool(self.session.execute(
            select(SyncJob.cancel_requested).where(SyncJob.id == job_id)
        ).scalar_one_or_none())
