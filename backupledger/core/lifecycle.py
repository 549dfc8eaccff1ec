from __future__ import annotations

import threading
from datetime import datetime, timezone
from enum import Enum

from backupledger.db.models import JobStatus, VmResultStatus


class OperationCancelledError(RuntimeError):
    pass


class MutationOutcome(str, Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"

    def __bool__(self) -> bool:
        return self is MutationOutcome.APPLIED


# Terminal job states may be re-entered (last completion wins) but never left for Running.
JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.WARNING, JobStatus.FAILED},
    JobStatus.COMPLETED: {JobStatus.COMPLETED, JobStatus.WARNING, JobStatus.FAILED},
    JobStatus.WARNING: {JobStatus.COMPLETED, JobStatus.WARNING, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.COMPLETED, JobStatus.WARNING, JobStatus.FAILED},
}

VM_RESULT_TRANSITIONS: dict[VmResultStatus, set[VmResultStatus]] = {
    VmResultStatus.PENDING: {
        VmResultStatus.SUCCESS,
        VmResultStatus.FAILED,
        VmResultStatus.SKIPPED,
        VmResultStatus.WARNING,
    },
    VmResultStatus.SUCCESS: set(),
    VmResultStatus.FAILED: set(),
    VmResultStatus.SKIPPED: set(),
    VmResultStatus.WARNING: set(),
}

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.WARNING, JobStatus.FAILED})
TERMINAL_VM_RESULT_STATUSES = frozenset(
    {VmResultStatus.SUCCESS, VmResultStatus.FAILED, VmResultStatus.SKIPPED, VmResultStatus.WARNING}
)


def is_terminal(status: JobStatus | VmResultStatus) -> bool:
    if isinstance(status, JobStatus):
        return status in TERMINAL_JOB_STATUSES
    return status in TERMINAL_VM_RESULT_STATUSES


def can_transition(from_status: JobStatus | VmResultStatus, to_status: JobStatus | VmResultStatus) -> bool:
    if from_status == to_status and not is_terminal(from_status):
        return True
    if isinstance(from_status, JobStatus) and isinstance(to_status, JobStatus):
        return to_status in JOB_TRANSITIONS[from_status]
    if isinstance(from_status, VmResultStatus) and isinstance(to_status, VmResultStatus):
        return to_status in VM_RESULT_TRANSITIONS[from_status]
    raise TypeError(f"Cannot compare {type(from_status).__name__} with {type(to_status).__name__}")


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def not_before(floor: datetime | None, value: datetime) -> datetime:
    floor_utc = coerce_utc(floor)
    if floor_utc is not None and value < floor_utc:
        return floor_utc
    return value


def completion_stamp(started_at: datetime | None, now: datetime | None = None) -> datetime:
    """Return a completion timestamp that never precedes ``started_at``."""
    return not_before(started_at, now or utc_now())


def raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Operation cancelled before the storage write was issued")
