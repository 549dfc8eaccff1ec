from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

import pytest

import backupledger.db.session as db_session_module
from backupledger.core.config import get_settings
from backupledger.core.lifecycle import MutationOutcome, OperationCancelledError
from backupledger.db.init_db import initialize_database
from backupledger.db.models import JobVmLog
from backupledger.jobs.service import JobLifecycleManager
from backupledger.vms.logs import VmLogSink
from backupledger.vms.service import VmResultTracker


def make_vm_result(tmp_path: Path) -> tuple[VmLogSink, int]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["BACKUPLEDGER_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    session_factory = db_session_module.get_session_factory()
    job_id = JobLifecycleManager(get_settings(), session_factory).create_job("Backup")
    vm_result_id = VmResultTracker(session_factory).begin_vm(job_id, 101, "web1", "hostA", "store1")
    return VmLogSink(session_factory), vm_result_id


def test_logs_are_returned_in_append_order(tmp_path: Path) -> None:
    sink, vm_result_id = make_vm_result(tmp_path)

    assert sink.log_vm(vm_result_id, "freezing guest filesystems") is MutationOutcome.APPLIED
    assert sink.log_vm(vm_result_id, "freeze timed out", "Warning") is MutationOutcome.APPLIED
    assert sink.log_vm(vm_result_id, "snapshot created", "Info") is MutationOutcome.APPLIED

    entries = sink.list_vm_logs(vm_result_id)

    assert [entry.message for entry in entries] == [
        "freezing guest filesystems",
        "freeze timed out",
        "snapshot created",
    ]
    assert [entry.level for entry in entries] == ["Info", "Warning", "Info"]
    timestamps = [entry.timestamp_utc for entry in entries]
    assert timestamps == sorted(timestamps)
    assert all(stamp.tzinfo is not None for stamp in timestamps)


def test_blank_level_defaults_to_info_and_long_level_is_kept_whole(tmp_path: Path) -> None:
    sink, vm_result_id = make_vm_result(tmp_path)
    long_level = "Critical-Diagnostic-Replication-Timeout"

    sink.log_vm(vm_result_id, "first", "  ")
    sink.log_vm(vm_result_id, "second", "Critical-Diagnostic")
    sink.log_vm(vm_result_id, "third", f"  {long_level} ")

    levels = [entry.level for entry in sink.list_vm_logs(vm_result_id)]
    assert levels == ["Info", "Critical-Diagnostic", long_level]


def test_appended_lines_are_logged_at_debug(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    sink, vm_result_id = make_vm_result(tmp_path)

    with caplog.at_level(logging.DEBUG, logger="backupledger.vms.logs"):
        sink.log_vm(vm_result_id, "snapshot created", "Warning")

    assert f"VM result {vm_result_id}: appended Warning log line" in caplog.text


def test_log_for_unknown_vm_result_is_not_found(tmp_path: Path) -> None:
    sink, _ = make_vm_result(tmp_path)

    assert sink.log_vm(31337, "orphan line") is MutationOutcome.NOT_FOUND

    with db_session_module.get_session_factory()() as session:
        assert session.query(JobVmLog).count() == 0


def test_cancelled_log_call_writes_nothing(tmp_path: Path) -> None:
    sink, vm_result_id = make_vm_result(tmp_path)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(OperationCancelledError):
        sink.log_vm(vm_result_id, "too late", cancel_event=cancel_event)

    assert sink.list_vm_logs(vm_result_id) == []
