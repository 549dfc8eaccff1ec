from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from backupledger.core.lifecycle import (
    MutationOutcome,
    can_transition,
    coerce_utc,
    completion_stamp,
    raise_if_cancelled,
    utc_now,
)
from backupledger.db.models import Job, JobVmResult, VmResultStatus
from backupledger.jobs.service import JobNotFoundError
from backupledger.vms.types import VmResultSnapshot

logger = logging.getLogger(__name__)


class VmResultNotFoundError(RuntimeError):
    pass


class VmResultTracker:
    """Per-VM progress ledger inside a job.

    Callers are expected to go ``begin_vm`` -> ``set_io_freeze_result`` ->
    ``mark_snapshot_requested`` -> ``mark_snapshot_taken`` -> one terminal
    call, skipping the optional steps as needed. The order is not enforced.
    Every call is its own committed write, so after a crash the last recorded
    field is the truth about how far the VM got.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return utc_now()

    def begin_vm(
        self,
        job_id: int,
        vmid: int,
        vm_name: str,
        host_name: str,
        storage_name: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> int:
        raise_if_cancelled(cancel_event)
        with self._session_factory() as session:
            if session.get(Job, job_id) is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            row = JobVmResult(
                job_id=job_id,
                vmid=vmid,
                vm_name=vm_name or "",
                host_name=host_name or "",
                storage_name=storage_name or "",
                status=VmResultStatus.PENDING,
                started_at_utc=self._now(),
            )
            session.add(row)
            session.commit()
            row_id = row.id
        logger.debug("Job %s: opened VM result %s for vmid %s", job_id, row_id, vmid)
        return row_id

    def _record_progress(
        self,
        vm_result_id: int,
        step: str,
        apply: Callable[[JobVmResult], None],
        cancel_event: threading.Event | None,
    ) -> MutationOutcome:
        raise_if_cancelled(cancel_event)
        with self._session_factory() as session:
            row = session.get(JobVmResult, vm_result_id)
            if row is None:
                return MutationOutcome.NOT_FOUND
            apply(row)
            session.commit()
        logger.debug("VM result %s: recorded %s", vm_result_id, step)
        return MutationOutcome.APPLIED

    def _finish(
        self,
        vm_result_id: int,
        target: VmResultStatus,
        apply: Callable[[JobVmResult], None],
        cancel_event: threading.Event | None,
    ) -> MutationOutcome:
        raise_if_cancelled(cancel_event)
        with self._session_factory() as session:
            row = session.get(JobVmResult, vm_result_id)
            if row is None:
                return MutationOutcome.NOT_FOUND
            if not can_transition(row.status, target):
                logger.warning(
                    "Ignoring %s for VM result %s (vmid %s): already %s",
                    target.value,
                    vm_result_id,
                    row.vmid,
                    row.status.value,
                )
                return MutationOutcome.IGNORED
            apply(row)
            row.status = target
            row.completed_at_utc = completion_stamp(row.started_at_utc, self._now())
            session.commit()
        logger.debug("VM result %s finished as %s", vm_result_id, target.value)
        return MutationOutcome.APPLIED

    def mark_skipped(
        self,
        vm_result_id: int,
        reason: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            row.reason = reason

        return self._finish(vm_result_id, VmResultStatus.SKIPPED, apply, cancel_event)

    def set_io_freeze_result(
        self,
        vm_result_id: int,
        attempted: bool,
        succeeded: bool,
        was_running: bool,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            row.io_freeze_attempted = attempted
            row.io_freeze_succeeded = succeeded
            row.was_running = was_running

        return self._record_progress(vm_result_id, "io freeze result", apply, cancel_event)

    def mark_snapshot_requested(
        self,
        vm_result_id: int,
        snapshot_name: str,
        upid: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            row.snapshot_requested = True
            row.proxmox_snapshot_name = snapshot_name
            row.snapshot_upid = upid

        return self._record_progress(vm_result_id, "snapshot request", apply, cancel_event)

    def mark_snapshot_taken(
        self,
        vm_result_id: int,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            row.snapshot_taken = True

        return self._record_progress(vm_result_id, "snapshot taken", apply, cancel_event)

    def mark_success(
        self,
        vm_result_id: int,
        backup_record_id: int | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            row.backup_record_id = backup_record_id

        return self._finish(vm_result_id, VmResultStatus.SUCCESS, apply, cancel_event)

    def mark_failure(
        self,
        vm_result_id: int,
        error: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            row.error_message = error

        return self._finish(vm_result_id, VmResultStatus.FAILED, apply, cancel_event)

    def mark_warning(
        self,
        vm_result_id: int,
        note: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        def apply(row: JobVmResult) -> None:
            if note is not None and note.strip():
                row.reason = note

        return self._finish(vm_result_id, VmResultStatus.WARNING, apply, cancel_event)

    def get_vm_result(self, vm_result_id: int) -> VmResultSnapshot:
        with self._session_factory() as session:
            row = session.get(JobVmResult, vm_result_id)
            if row is None:
                raise VmResultNotFoundError(f"VM result not found: {vm_result_id}")
            return self._to_snapshot(row)

    def list_vm_results(self, job_id: int) -> list[VmResultSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(JobVmResult).where(JobVmResult.job_id == job_id).order_by(JobVmResult.id.asc())
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def _to_snapshot(self, row: JobVmResult) -> VmResultSnapshot:
        return VmResultSnapshot(
            id=row.id,
            job_id=row.job_id,
            vmid=row.vmid,
            vm_name=row.vm_name,
            host_name=row.host_name,
            storage_name=row.storage_name,
            status=row.status,
            reason=row.reason,
            error_message=row.error_message,
            was_running=row.was_running,
            io_freeze_attempted=row.io_freeze_attempted,
            io_freeze_succeeded=row.io_freeze_succeeded,
            snapshot_requested=row.snapshot_requested,
            snapshot_taken=row.snapshot_taken,
            proxmox_snapshot_name=row.proxmox_snapshot_name,
            snapshot_upid=row.snapshot_upid,
            backup_record_id=row.backup_record_id,
            started_at_utc=coerce_utc(row.started_at_utc) or row.started_at_utc,
            completed_at_utc=coerce_utc(row.completed_at_utc),
        )


def vm_result_snapshot_to_dict(snapshot: VmResultSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["status"] = snapshot.status.value
    return payload
