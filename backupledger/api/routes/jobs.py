from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from backupledger.api.schemas.jobs import JobListResponse, JobResponse, JobSummaryResponse
from backupledger.api.schemas.vm_results import VmResultListResponse, VmResultResponse
from backupledger.core.config import get_settings
from backupledger.core.lifecycle import MutationOutcome
from backupledger.db.session import get_session_factory
from backupledger.jobs.service import JobLifecycleManager, JobNotFoundError, snapshot_to_dict, summary_to_dict
from backupledger.vms.service import VmResultTracker, vm_result_snapshot_to_dict

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_manager() -> JobLifecycleManager:
    return JobLifecycleManager(settings=get_settings(), session_factory=get_session_factory())


def get_vm_result_tracker() -> VmResultTracker:
    return VmResultTracker(session_factory=get_session_factory())


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    job_status: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    started_after: datetime | None = None,
    manager: JobLifecycleManager = Depends(get_job_manager),
) -> JobListResponse:
    try:
        result = manager.list_jobs(
            limit=limit,
            cursor=cursor,
            status=job_status,
            search=search,
            started_after=started_after,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: int, manager: JobLifecycleManager = Depends(get_job_manager)) -> JobResponse:
    try:
        job = manager.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/summary", response_model=JobSummaryResponse)
def get_job_summary(job_id: int, manager: JobLifecycleManager = Depends(get_job_manager)) -> JobSummaryResponse:
    try:
        summary = manager.summarize_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobSummaryResponse.model_validate(summary_to_dict(summary))


@router.get("/{job_id}/vms", response_model=VmResultListResponse)
def list_job_vm_results(
    job_id: int,
    manager: JobLifecycleManager = Depends(get_job_manager),
    tracker: VmResultTracker = Depends(get_vm_result_tracker),
) -> VmResultListResponse:
    try:
        manager.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    items = tracker.list_vm_results(job_id)
    return VmResultListResponse(
        items=[VmResultResponse.model_validate(vm_result_snapshot_to_dict(item)) for item in items]
    )


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(job_id: int, manager: JobLifecycleManager = Depends(get_job_manager)) -> JobResponse:
    outcome = manager.cancel_job(job_id)
    if outcome is MutationOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {job_id}")
    if outcome is MutationOutcome.IGNORED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is finished or already has a cancel request",
        )
    return JobResponse.model_validate(snapshot_to_dict(manager.get_job(job_id)))
