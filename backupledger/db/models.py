from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    WARNING = "Warning"
    FAILED = "Failed"


class VmResultStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    WARNING = "Warning"


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    related_vm: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=JobStatus.RUNNING,
    )
    progress_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_started_id", "started_at", "id"),
        Index("ix_jobs_status", "status"),
    )


class JobVmResult(Base):
    __tablename__ = "job_vm_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)

    vmid: Mapped[int] = mapped_column(Integer, nullable=False)
    vm_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    host_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    storage_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    status: Mapped[VmResultStatus] = mapped_column(
        SAEnum(VmResultStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=VmResultStatus.PENDING,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    was_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    io_freeze_attempted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    io_freeze_succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    snapshot_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    snapshot_taken: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    proxmox_snapshot_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    snapshot_upid: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Artifact rows live outside this schema, so no foreign key here.
    backup_record_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    started_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_job_vm_results_job_id", "job_id"),
        Index("ix_job_vm_results_backup_record_id", "backup_record_id"),
    )


class JobVmLog(Base):
    __tablename__ = "job_vm_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_vm_result_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("job_vm_results.id", ondelete="CASCADE"),
        nullable=False,
    )
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(Text, nullable=False, default="Info")
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (Index("ix_job_vm_logs_result_id", "job_vm_result_id", "id"),)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
