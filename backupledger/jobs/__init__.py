from backupledger.jobs.service import (
    CANCELLED_JOB_MESSAGE,
    JobLifecycleManager,
    JobListResult,
    JobNotFoundError,
    parse_job_status,
    snapshot_to_dict,
    suggest_job_status,
    summary_to_dict,
)
from backupledger.jobs.types import JobOutcomeSummary, JobSnapshot

__all__ = [
    "CANCELLED_JOB_MESSAGE",
    "JobLifecycleManager",
    "JobListResult",
    "JobNotFoundError",
    "JobOutcomeSummary",
    "JobSnapshot",
    "parse_job_status",
    "snapshot_to_dict",
    "suggest_job_status",
    "summary_to_dict",
]
