from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_job_progress_and_cancel(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _column_exists(conn, "jobs", "progress_note"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN progress_note TEXT"))
    if not _column_exists(conn, "jobs", "cancel_requested_at"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN cancel_requested_at DATETIME"))

    # An unfinished "Cancelled" row may still have a live orchestrator polling it.
    conn.execute(
        text(
            """
            UPDATE jobs
            SET status = 'Running',
                cancel_requested_at = COALESCE(cancel_requested_at, CURRENT_TIMESTAMP)
            WHERE lower(status) = 'cancelled'
              AND completed_at IS NULL
            """
        )
    )
    conn.execute(
        text(
            """
            UPDATE jobs
            SET error_message = COALESCE(NULLIF(trim(error_message), ''), 'Job was cancelled.'),
                status = 'Failed',
                cancel_requested_at = COALESCE(cancel_requested_at, completed_at)
            WHERE lower(status) = 'cancelled'
            """
        )
    )

    # Older rows kept progress phrases ("Paused VMs", ...) in the status column.
    conn.execute(
        text(
            """
            UPDATE jobs
            SET status = 'Running'
            WHERE lower(status) = 'pending'
              AND completed_at IS NULL
            """
        )
    )
    conn.execute(
        text(
            """
            UPDATE jobs
            SET progress_note = status,
                status = 'Running'
            WHERE status NOT IN ('Running', 'Completed', 'Warning', 'Failed')
              AND lower(status) NOT IN ('running', 'completed', 'warning', 'failed')
              AND completed_at IS NULL
            """
        )
    )
    conn.execute(
        text(
            """
            UPDATE jobs
            SET status = CASE lower(status)
                WHEN 'running' THEN 'Running'
                WHEN 'completed' THEN 'Completed'
                WHEN 'warning' THEN 'Warning'
                WHEN 'failed' THEN 'Failed'
                ELSE 'Completed'
            END
            WHERE status NOT IN ('Running', 'Completed', 'Warning', 'Failed')
            """
        )
    )


def _migration_0003_vm_result_indexes(conn: Connection) -> None:
    if _table_exists(conn, "jobs"):
        if not _index_exists(conn, "jobs", "ix_jobs_started_id"):
            conn.execute(text("CREATE INDEX ix_jobs_started_id ON jobs (started_at, id)"))
        if not _index_exists(conn, "jobs", "ix_jobs_status"):
            conn.execute(text("CREATE INDEX ix_jobs_status ON jobs (status)"))

    if _table_exists(conn, "job_vm_results"):
        conn.execute(
            text("CREATE INDEX IF NOT EXISTS ix_job_vm_results_job_id ON job_vm_results (job_id)")
        )
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_job_vm_results_backup_record_id "
                "ON job_vm_results (backup_record_id)"
            )
        )

    if _table_exists(conn, "job_vm_logs"):
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_job_vm_logs_result_id "
                "ON job_vm_logs (job_vm_result_id, id)"
            )
        )


def _migration_0004_normalize_vm_result_status(conn: Connection) -> None:
    if not _table_exists(conn, "job_vm_results"):
        return
    conn.execute(
        text(
            """
            UPDATE job_vm_results
            SET status = CASE lower(status)
                WHEN 'pending' THEN 'Pending'
                WHEN 'success' THEN 'Success'
                WHEN 'failed' THEN 'Failed'
                WHEN 'skipped' THEN 'Skipped'
                WHEN 'warning' THEN 'Warning'
                ELSE 'Warning'
            END,
                reason = CASE
                    WHEN lower(status) IN ('pending', 'success', 'failed', 'skipped', 'warning') THEN reason
                    ELSE COALESCE(reason, 'Unrecognized legacy status: ' || status)
                END
            WHERE status NOT IN ('Pending', 'Success', 'Failed', 'Skipped', 'Warning')
            """
        )
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="job_progress_and_cancel", apply=_migration_0002_job_progress_and_cancel),
    MigrationStep(version=3, name="vm_result_indexes", apply=_migration_0003_vm_result_indexes),
    MigrationStep(
        version=4,
        name="normalize_vm_result_status",
        apply=_migration_0004_normalize_vm_result_status,
    ),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            logger.info("Applied schema migration %04d_%s", step.version, step.name)
