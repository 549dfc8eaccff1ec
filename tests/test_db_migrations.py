from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text

from backupledger.db.migrations import MIGRATIONS, apply_migrations
from backupledger.db.models import Base


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _create_legacy_schema(conn) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type VARCHAR(64) NOT NULL,
                related_vm VARCHAR(255),
                payload_json TEXT,
                status VARCHAR(64) NOT NULL,
                error_message TEXT,
                started_at DATETIME NOT NULL,
                completed_at DATETIME
            )
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TABLE job_vm_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                vmid INTEGER NOT NULL,
                vm_name VARCHAR(255) NOT NULL DEFAULT '',
                host_name VARCHAR(255) NOT NULL DEFAULT '',
                storage_name VARCHAR(255) NOT NULL DEFAULT '',
                status VARCHAR(16) NOT NULL,
                reason TEXT,
                error_message TEXT,
                was_running BOOLEAN NOT NULL DEFAULT 0,
                io_freeze_attempted BOOLEAN NOT NULL DEFAULT 0,
                io_freeze_succeeded BOOLEAN NOT NULL DEFAULT 0,
                snapshot_requested BOOLEAN NOT NULL DEFAULT 0,
                snapshot_taken BOOLEAN NOT NULL DEFAULT 0,
                proxmox_snapshot_name VARCHAR(255),
                snapshot_upid VARCHAR(255),
                backup_record_id INTEGER,
                started_at_utc DATETIME NOT NULL,
                completed_at_utc DATETIME
            )
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TABLE job_vm_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_vm_result_id INTEGER NOT NULL REFERENCES job_vm_results(id) ON DELETE CASCADE,
                timestamp_utc DATETIME NOT NULL,
                level VARCHAR(16) NOT NULL DEFAULT 'Info',
                message TEXT NOT NULL DEFAULT ''
            )
            """
        )
    )


def test_apply_migrations_upgrades_legacy_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)
    started = "2024-03-01 02:00:00.000000"
    finished = "2024-03-01 02:30:00.000000"

    with engine.begin() as conn:
        _create_legacy_schema(conn)
        conn.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, error_message, started_at, completed_at) VALUES
                    (1, 'Backup', 'Paused VMs', NULL, :started, NULL),
                    (2, 'Backup', 'Cancelled', NULL, :started, NULL),
                    (3, 'Restore', 'completed', NULL, :started, :finished),
                    (4, 'Backup', 'Pending', NULL, :started, NULL),
                    (5, 'Backup', 'Uploading', NULL, :started, :finished),
                    (6, 'Backup', 'cancelled', NULL, :started, :finished)
                """
            ),
            {"started": started, "finished": finished},
        )
        conn.execute(
            text(
                """
                INSERT INTO job_vm_results (id, job_id, vmid, status, reason, started_at_utc) VALUES
                    (1, 1, 101, 'success', NULL, :started),
                    (2, 1, 102, 'Aborted', NULL, :started)
                """
            ),
            {"started": started},
        )

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        job_columns = _column_names(conn, "jobs")
        job_indexes = _index_names(conn, "jobs")
        vm_indexes = _index_names(conn, "job_vm_results")
        log_indexes = _index_names(conn, "job_vm_logs")
        jobs = {
            int(row["id"]): row
            for row in conn.execute(
                text("SELECT id, status, progress_note, error_message, cancel_requested_at, completed_at FROM jobs")
            ).mappings()
        }
        vm_results = {
            int(row["id"]): row
            for row in conn.execute(text("SELECT id, status, reason FROM job_vm_results")).mappings()
        }
        migration_versions = [
            int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version"))
        ]

    assert {"progress_note", "cancel_requested_at"} <= job_columns
    assert {"ix_jobs_started_id", "ix_jobs_status"} <= job_indexes
    assert {"ix_job_vm_results_job_id", "ix_job_vm_results_backup_record_id"} <= vm_indexes
    assert "ix_job_vm_logs_result_id" in log_indexes

    assert (jobs[1]["status"], jobs[1]["progress_note"]) == ("Running", "Paused VMs")
    assert jobs[2]["status"] == "Running"
    assert jobs[2]["cancel_requested_at"] is not None
    assert jobs[2]["completed_at"] is None
    assert jobs[2]["error_message"] is None
    assert jobs[3]["status"] == "Completed"
    assert (jobs[4]["status"], jobs[4]["progress_note"]) == ("Running", None)
    assert jobs[5]["status"] == "Completed"
    assert jobs[5]["cancel_requested_at"] is None
    assert jobs[6]["status"] == "Failed"
    assert jobs[6]["error_message"] == "Job was cancelled."
    assert jobs[6]["cancel_requested_at"] == jobs[6]["completed_at"]

    assert vm_results[1]["status"] == "Success"
    assert vm_results[2]["status"] == "Warning"
    assert vm_results[2]["reason"] == "Unrecognized legacy status: Aborted"

    assert migration_versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_on_fresh_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)
    Base.metadata.create_all(bind=engine)

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM schema_migrations")).scalar_one()
        job_indexes = _index_names(conn, "jobs")

    assert count == len(MIGRATIONS)
    assert {"ix_jobs_started_id", "ix_jobs_status"} <= job_indexes
