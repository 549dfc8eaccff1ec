from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from backupledger.db.models import VmResultStatus


@dataclass(slots=True)
class VmResultSnapshot:
    id: int
    job_id: int
    vmid: int
    vm_name: str
    host_name: str
    storage_name: str
    status: VmResultStatus
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


@dataclass(slots=True)
class VmLogEntry:
    id: int
    job_vm_result_id: int
    level: str
    message: str
    timestamp_utc: datetime
