from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class VmResultResponse(BaseModel):
    id: int
    job_id: int
    vmid: int
    vm_name: str
    host_name: str
    storage_name: str
    status: str
    reason: str | None
    error_message: str | None
    was_running: bool
    io_freeze_attempted: bool
    io_freeze_succeeded: bool
    snapshot_requested: bool
    snapshot_taken: bool
    proxmox_snapshot_name: str | None
    snapshot_upid: str | None
    backup_record_id: int | None
    started_at_utc: datetime
    completed_at_utc: datetime | None


class VmResultListResponse(BaseModel):
    items: list[VmResultResponse]


class VmLogResponse(BaseModel):
    id: int
    job_vm_result_id: int
    level: str
    message: str
    timestamp_utc: datetime


class VmLogListResponse(BaseModel):
    items: list[VmLogResponse]
