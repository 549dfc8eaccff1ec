from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from backupledger.core.config import Settings
from backupledger.core.lifecycle import (
    TERMINAL_JOB_STATUSES,
    MutationOutcome,
    can_transition,
    coerce_utc,
    completion_stamp,
    raise_if_cancelled,
    utc_now,
)
from backupledger.db.models import Job, JobStatus, JobVmResult, VmResultStatus
from backupledger.jobs.types import JobOutcomeSummary, JobSnapshot

logger = logging.getLogger(__name__)

CANCELLED_JOB_MESSAGE = "Job was cancelled."


class JobNotFoundError(RuntimeError):
    pass


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None


def parse_job_status(raw: JobStatus | str | None) -> JobStatus | None:
    """Map a status value onto ``JobStatus`` case-insensitively, or ``None`` if it is not one."""
    if raw is None:
        return None
    if isinstance(raw, JobStatus):
        return raw
    token = raw.strip().lower()
    for member in JobStatus:
        if member.value.lower() == token:
            return member
    return None


def suggest_job_status(counts: dict[VmResultStatus, int]) -> JobStatus:
    total = sum(counts.values())
    skipped = counts.get(VmResultStatus.SKIPPED, 0)
    failed = counts.get(VmResultStatus.FAILED, 0)
    attempted = total - skipped
    if attempted > 0 and failed == attempted:
        return JobStatus.FAILED
    if failed or counts.get(VmResultStatus.WARNING, 0) or counts.get(VmResultStatus.PENDING, 0):
        return JobStatus.WARNING
    return JobStatus.COMPLETED


class JobLifecycleManager:
    """Job-level state machine.

    Each call opens its own short-lived session and commits exactly one
    read-modify-write. Nothing spans calls, so two writers on the same job
    resolve by last write wins.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return utc_now()

    def create_job(
        self,
        job_type: str | None,
        related_vm: str | None = None,
        payload: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> int:
        raise_if_cancelled(cancel_event)
        normalized_type = (job_type or "").strip() or self._settings.default_job_type
        job = Job(
            type=normalized_type,
            related_vm=related_vm.strip() if related_vm is not None else None,
            payload_json=payload,
            status=JobStatus.RUNNING,
            started_at=self._now(),
        )
        with self._session_factory() as session:
            session.add(job)
            session.commit()
            job_id = job.id
        logger.info("Created %s job %s (related_vm=%s)", normalized_type, job_id, job.related_vm)
        return job_id

    def update_job_status(
        self,
        job_id: int,
        status: JobStatus | str | None,
        error: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        """Record a progress note or an explicit status on a job.

        A ``JobStatus`` value (or its name in any case) replaces the status;
        any other non-blank text is kept as ``progress_note`` and the status
        stays as it is. A finished job is never moved back to Running.
        """
        raise_if_cancelled(cancel_event)
        target = parse_job_status(status)
        note = status.strip() if target is None and isinstance(status, str) and status.strip() else None

        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return MutationOutcome.NOT_FOUND

            if target is not None:
                if not can_transition(job.status, target):
                    logger.warning(
                        "Ignoring status change for job %s: %s -> %s",
                        job_id,
                        job.status.value,
                        target.value,
                    )
                    return MutationOutcome.IGNORED
                if target in TERMINAL_JOB_STATUSES and job.status == JobStatus.RUNNING:
                    job.completed_at = completion_stamp(job.started_at, self._now())
                job.status = target
            elif note is not None:
                job.progress_note = note

            if error is not None and error.strip():
                job.error_message = error
            session.commit()

        logger.debug("Job %s status update applied (status=%s, note=%s)", job_id, target, note)
        return MutationOutcome.APPLIED

    def complete_job(
        self,
        job_id: int,
        final_status: JobStatus | str | None = JobStatus.COMPLETED,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        raise_if_cancelled(cancel_event)
        if final_status is None or (isinstance(final_status, str) and not final_status.strip()):
            target = JobStatus.COMPLETED
        else:
            target = parse_job_status(final_status)
            if target is None:
                allowed = ", ".join(item.value for item in TERMINAL_JOB_STATUSES)
                raise ValueError(f"Unknown final job status: {final_status}. Allowed: {allowed}")
        if target not in TERMINAL_JOB_STATUSES:
            raise ValueError(f"Final job status must be terminal, got {target.value}")

        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return MutationOutcome.NOT_FOUND
            previous = job.status
            job.status = target
            job.completed_at = completion_stamp(job.started_at, self._now())
            session.commit()

        if previous in TERMINAL_JOB_STATUSES:
            logger.info("Job %s completed again: %s -> %s", job_id, previous.value, target.value)
        else:
            logger.info("Job %s completed with status %s", job_id, target.value)
        return MutationOutcome.APPLIED

    def fail_job(
        self,
        job_id: int,
        message: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        raise_if_cancelled(cancel_event)
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return False
            job.status = JobStatus.FAILED
            job.error_message = message
            job.completed_at = completion_stamp(job.started_at, self._now())
            session.commit()

        logger.info("Job %s failed: %s", job_id, message)
        return True

    def cancel_job(
        self,
        job_id: int,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MutationOutcome:
        """Ask the orchestrator running a job to stop.

        Only the request is stored. The job stays Running until its
        orchestrator polls ``fail_if_cancel_requested`` and gives up. Finished
        jobs and jobs with a pending request are left alone.
        """
        raise_if_cancelled(cancel_event)
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return MutationOutcome.NOT_FOUND
            if job.status in TERMINAL_JOB_STATUSES or job.cancel_requested_at is not None:
                logger.warning(
                    "Ignoring cancel request for job %s (status=%s, requested_at=%s)",
                    job_id,
                    job.status.value,
                    job.cancel_requested_at,
                )
                return MutationOutcome.IGNORED
            job.cancel_requested_at = self._now()
            session.commit()

        logger.info("Cancellation requested for job %s", job_id)
        return MutationOutcome.APPLIED

    def is_cancel_requested(self, job_id: int) -> bool:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return job.cancel_requested_at is not None

    def fail_if_cancel_requested(
        self,
        job_id: int,
        *,
        cancel_event: threading.Event | None = None,
    ) -> bool:
        """Return ``True`` when the job has a cancel request.

        A job that is still Running is failed in the same write, with
        ``CANCELLED_JOB_MESSAGE`` as its error.
        """
        raise_if_cancelled(cancel_event)
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if job.cancel_requested_at is None:
                return False
            if job.status != JobStatus.RUNNING:
                return True
            job.status = JobStatus.FAILED
            job.error_message = CANCELLED_JOB_MESSAGE
            job.completed_at = completion_stamp(job.started_at, self._now())
            session.commit()

        logger.info("Job %s stopped after cancel request", job_id)
        return True

    def get_job(self, job_id: int) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    def list_jobs(
        self,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        status: JobStatus | str | None = None,
        search: str | None = None,
        started_after: datetime | None = None,
    ) -> JobListResult:
        requested = self._settings.default_page_size if limit is None else limit
        bounded_limit = max(1, min(requested, self._settings.max_page_size))

        status_filter: JobStatus | None = None
        if status is not None and (not isinstance(status, str) or status.strip()):
            status_filter = parse_job_status(status)
            if status_filter is None:
                raise ValueError(f"Unknown job status filter: {status}")

        with self._session_factory() as session:
            stmt = select(Job).order_by(Job.started_at.desc(), Job.id.desc()).limit(bounded_limit + 1)
            if status_filter is not None:
                stmt = stmt.where(Job.status == status_filter)
            if started_after is not None:
                # Stored stamps are naive UTC text on SQLite; compare in UTC.
                cutoff = (coerce_utc(started_after) or started_after).astimezone(timezone.utc)
                stmt = stmt.where(Job.started_at > cutoff)
            if search is not None and search.strip():
                needle = search.strip()
                stmt = stmt.where(
                    or_(
                        Job.type.contains(needle, autoescape=True),
                        Job.related_vm.contains(needle, autoescape=True),
                    )
                )
            if cursor:
                try:
                    anchor_id = int(cursor)
                except ValueError as exc:
                    raise ValueError(f"Invalid pagination cursor: {cursor}") from exc
                anchor_exists = session.scalar(select(Job.id).where(Job.id == anchor_id))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_started_at = select(Job.started_at).where(Job.id == anchor_id).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        Job.started_at < anchor_started_at,
                        and_(Job.started_at == anchor_started_at, Job.id < anchor_id),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = str(items[-1].id) if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def summarize_job(self, job_id: int) -> JobOutcomeSummary:
        """Count the job's VM results per status.

        ``suggested_status`` is advisory only; the stored job status is always
        the one the caller chose.
        """
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            counts: dict[VmResultStatus, int] = dict(
                session.execute(
                    select(JobVmResult.status, func.count())
                    .where(JobVmResult.job_id == job_id)
                    .group_by(JobVmResult.status)
                ).all()
            )
            job_status = job.status

        return JobOutcomeSummary(
            job_id=job_id,
            job_status=job_status,
            total=sum(counts.values()),
            counts={member: int(counts.get(member, 0)) for member in VmResultStatus},
            suggested_status=suggest_job_status(counts),
        )

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            type=job.type,
            related_vm=job.related_vm,
            payload_json=job.payload_json,
            status=job.status,
            progress_note=job.progress_note,
            error_message=job.error_message,
            cancel_requested_at=coerce_utc(job.cancel_requested_at),
            started_at=coerce_utc(job.started_at) or job.started_at,
            completed_at=coerce_utc(job.completed_at),
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["status"] = snapshot.status.value
    return payload


def summary_to_dict(summary: JobOutcomeSummary) -> dict[str, Any]:
    return {
        "job_id": summary.job_id,
        "job_status": summary.job_status.value,
        "total": summary.total,
        "counts": {status.value: count for status, count in summary.counts.items()},
        "suggested_status": summary.suggested_status.value,
    }
