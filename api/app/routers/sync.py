import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import SyncAlreadyRunning, SyncJobNotFound
from app.core.redis import get_redis
from app.models.sync_job import CANCELLED, PENDING, RUNNING
from app.schemas.sync import (
    SyncJobResponse,
    SyncProgressResponse,
    TriggerSyncRequest,
    TriggerSyncResponse,
)
from app.services.progress import AsyncProgressCache, build_progress_view
from app.services.store import LedgerStore
from app.services.sync import create_pending_job, run_sync_job

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_progress_cache() -> AsyncProgressCache:
    return AsyncProgressCache(get_redis())


@router.post("", response_model=TriggerSyncResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("10/minute")
async def trigger_sync(
    request: Request,
    payload: TriggerSyncRequest,
    db: AsyncSession = Depends(get_db),
):
    """Queue a sync job and hand it to a worker. Returns immediately."""
    try:
        job = await db.run_sync(
            lambda s: create_pending_job(LedgerStore(s), payload.sync_type, payload.kinds, payload.since)
        )
    except SyncAlreadyRunning:
        await db.commit()  # stale jobs abandoned along the way stay abandoned
        raise
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    await db.commit()

    run_sync_job.delay(str(job.id))
    return TriggerSyncResponse(job_id=job.id, status=job.status)


@router.get("/progress", response_model=SyncProgressResponse)
async def latest_sync_progress(
    db: AsyncSession = Depends(get_db),
    cache: AsyncProgressCache = Depends(get_progress_cache),
):
    """Progress of the most recently created job."""
    job = await db.run_sync(lambda s: LedgerStore(s).latest_job())
    if job is None:
        raise SyncJobNotFound("No sync job has been created yet")
    return build_progress_view(job, await cache.get(job.id))


@router.get("/jobs", response_model=list[SyncJobResponse])
async def list_sync_jobs(limit: int = 20, db: AsyncSession = Depends(get_db)):
    return await db.run_sync(lambda s: LedgerStore(s).recent_jobs(min(max(limit, 1), 100)))


@router.get("/{job_id}/progress", response_model=SyncProgressResponse)
async def sync_progress(
    job_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    cache: AsyncProgressCache = Depends(get_progress_cache),
):
    job = await db.run_sync(lambda s: LedgerStore(s).get_job(job_id))
    if job is None:
        raise SyncJobNotFound(f"Sync job {job_id} not found")
    return build_progress_view(job, await cache.get(job_id))


@router.post("/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_sync(job_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """
    Cancel a job. A pending job is cancelled outright; a running job stops at
    the next entity-kind boundary and keeps what it already reconciled.
    """
    def _cancel(session):
        store = LedgerStore(session)
        job = store.get_job(job_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        if job.status == PENDING:
            store.finish_job(job_id, CANCELLED, error_message="Cancelled before start")
        elif job.status == RUNNING:
            store.request_cancel(job_id)
        else:
            raise HTTPException(status_code=409, detail=f"Sync job already {job.status}")
        return store.get_job(job_id)

    job = await db.run_sync(_cancel)
    await db.commit()
    return job
