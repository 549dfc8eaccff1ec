from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from backupledger.db.models import JobStatus, VmResultStatus


@dataclass(slots=True)
class JobSnapshot:
    id: int
    type: str
    related_vm: str | None
    payload_json: str | None
    status: JobStatus
    progress_note: str | None
    error_message: str | None
    cancel_requested_at: datetime | None
    started_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class JobOutcomeSummary:
    job_id: int
    job_status: JobStatus
    total: int
    counts: dict[VmResultStatus, int]
    suggested_status: JobStatus
