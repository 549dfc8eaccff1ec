from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from backupledger.api.routes.jobs import get_vm_result_tracker
from backupledger.api.schemas.vm_results import VmLogListResponse, VmLogResponse, VmResultResponse
from backupledger.db.session import get_session_factory
from backupledger.vms.logs import VmLogSink, vm_log_entry_to_dict
from backupledger.vms.service import VmResultNotFoundError, VmResultTracker, vm_result_snapshot_to_dict

router = APIRouter(prefix="/vm-results", tags=["vm-results"])


def get_vm_log_sink() -> VmLogSink:
    return VmLogSink(session_factory=get_session_factory())


@router.get("/{vm_result_id}", response_model=VmResultResponse)
def get_vm_result(vm_result_id: int, tracker: VmResultTracker = Depends(get_vm_result_tracker)) -> VmResultResponse:
    try:
        snapshot = tracker.get_vm_result(vm_result_id)
    except VmResultNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return VmResultResponse.model_validate(vm_result_snapshot_to_dict(snapshot))


@router.get("/{vm_result_id}/logs", response_model=VmLogListResponse)
def list_vm_logs(
    vm_result_id: int,
    tracker: VmResultTracker = Depends(get_vm_result_tracker),
    sink: VmLogSink = Depends(get_vm_log_sink),
) -> VmLogListResponse:
    try:
        tracker.get_vm_result(vm_result_id)
    except VmResultNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return VmLogListResponse(
        items=[VmLogResponse.model_validate(vm_log_entry_to_dict(entry)) for entry in sink.list_vm_logs(vm_result_id)]
    )
