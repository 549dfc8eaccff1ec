from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from backupledger.core.lifecycle import MutationOutcome, coerce_utc, not_before, raise_if_cancelled, utc_now
from backupledger.db.models import JobVmLog, JobVmResult
from backupledger.vms.types import VmLogEntry

logger = logging.getLogger(__name__)

DEFAULT_LOG_LEVEL = "Info"


class VmLogSink:
    """Append-only diagnostic lines attached to a VM result."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return utc_now()

    def log_vm(
        self,
        vm_result_id: int,
        message: str,
        level: str = DEFAULT_LOG_LEVEL,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        raise_if_cancelled(cancel_event)
        normalized_level = (level or "").strip() or DEFAULT_LOG_LEVEL
        with self._session_factory() as session:
            if session.get(JobVmResult, vm_result_id) is None:
                return MutationOutcome.NOT_FOUND
            # Keep per-result timestamps non-decreasing even if the wall clock steps back.
            last_timestamp = session.scalar(
                select(func.max(JobVmLog.timestamp_utc)).where(JobVmLog.job_vm_result_id == vm_result_id)
            )
            session.add(
                JobVmLog(
                    job_vm_result_id=vm_result_id,
                    level=normalized_level,
                    message=message,
                    timestamp_utc=not_before(last_timestamp, self._now()),
                )
            )
            session.commit()
        logger.debug("VM result %s: appended %s log line", vm_result_id, normalized_level)
        return MutationOutcome.APPLIED

    def list_vm_logs(self, vm_result_id: int) -> list[VmLogEntry]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(JobVmLog).where(JobVmLog.job_vm_result_id == vm_result_id).order_by(JobVmLog.id.asc())
            ).all()
            return [
                VmLogEntry(
                    id=row.id,
                    job_vm_result_id=row.job_vm_result_id,
                    level=row.level,
                    message=row.message,
                    timestamp_utc=coerce_utc(row.timestamp_utc) or row.timestamp_utc,
                )
                for row in rows
            ]


def vm_log_entry_to_dict(entry: VmLogEntry) -> dict[str, Any]:
    return asdict(entry)
