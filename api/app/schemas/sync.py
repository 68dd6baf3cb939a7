import uuid
from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel


class TriggerSyncRequest(BaseModel):
    sync_type: Literal["full", "incremental", "targeted"] = "incremental"
    kinds: list[str] | None = None      # targeted syncs only
    since: date | None = None           # records dated on/after; None = no date bound


class TriggerSyncResponse(BaseModel):
    job_id: uuid.UUID
    status: str


class StepProgress(BaseModel):
    status: str                         # pending | in_progress | done
    count: int = 0


class SyncProgressResponse(BaseModel):
    job_id: uuid.UUID
    sync_type: str
    status: str                         # in_progress | succeeded | failed | cancelled
    steps: dict[str, StepProgress]
    current_step: str | None
    percentage: int
    detail_available: bool
    started_at: datetime | None = None
    completed_at: datetime | None = None
    records_created: int | None = None
    records_updated: int | None = None
    records_removed: int | None = None
    error_message: str | None = None


class SyncJobResponse(BaseModel):
    id: uuid.UUID
    sync_type: str
    kinds: list[str]
    scope_since: date | None
    status: str
    cancel_requested: bool
    started_at: datetime | None
    completed_at: datetime | None
    records_created: int
    records_updated: int
    records_removed: int
    error_message: str | None
    created_at: datetime

    model_config = {"from_attributes": True}
