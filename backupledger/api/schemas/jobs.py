from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class JobResponse(BaseModel):
    id: int
    type: str
    related_vm: str | None
    payload_json: str | None
    status: str
    progress_note: str | None
    error_message: str | None
    cancel_requested_at: datetime | None
    started_at: datetime
    completed_at: datetime | None


class JobListResponse(BaseModel):
    items: list[JobResponse]
    next_cursor: str | None


class JobSummaryResponse(BaseModel):
    job_id: int
    job_status: str
    total: int
    counts: dict[str, int]
    suggested_status: str
