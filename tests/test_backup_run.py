from __future__ import annotations

import json
import os
from pathlib import Path

import backupledger.db.session as db_session_module
from backupledger.core.config import get_settings
from backupledger.db.init_db import initialize_database
from backupledger.db.models import JobStatus, VmResultStatus
from backupledger.jobs.service import JobLifecycleManager
from backupledger.vms.logs import VmLogSink
from backupledger.vms.service import VmResultTracker


def test_two_vm_backup_run_ends_in_warning(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["BACKUPLEDGER_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    session_factory = db_session_module.get_session_factory()
    manager = JobLifecycleManager(get_settings(), session_factory)
    tracker = VmResultTracker(session_factory)
    sink = VmLogSink(session_factory)

    job_id = manager.create_job("Backup", "vm-101", json.dumps({"vmids": [101, 102]}))

    web = tracker.begin_vm(job_id, 101, "web1", "hostA", "store1")
    manager.update_job_status(job_id, "Paused VMs")
    tracker.set_io_freeze_result(web, True, True, True)
    tracker.mark_snapshot_requested(web, "snap-101", "UPID:123")
    tracker.mark_snapshot_taken(web)
    sink.log_vm(web, "snapshot snap-101 created")
    tracker.mark_success(web, 55)

    db = tracker.begin_vm(job_id, 102, "db1", "hostA", "store1")
    sink.log_vm(db, "snapshot timed out after 600s", "Error")
    tracker.mark_failure(db, "snapshot timeout")

    manager.complete_job(job_id, "Warning")

    job = manager.get_job(job_id)
    assert job.status == JobStatus.WARNING
    assert job.progress_note == "Paused VMs"
    assert job.completed_at is not None
    assert job.completed_at >= job.started_at

    web_result = tracker.get_vm_result(web)
    assert web_result.status == VmResultStatus.SUCCESS
    assert web_result.backup_record_id == 55
    assert web_result.snapshot_upid == "UPID:123"
    assert web_result.snapshot_taken is True

    db_result = tracker.get_vm_result(db)
    assert db_result.status == VmResultStatus.FAILED
    assert db_result.error_message == "snapshot timeout"
    assert db_result.backup_record_id is None

    assert [item.id for item in tracker.list_vm_results(job_id)] == [web, db]
    assert [entry.level for entry in sink.list_vm_logs(db)] == ["Error"]
    assert manager.summarize_job(job_id).suggested_status == JobStatus.WARNING
