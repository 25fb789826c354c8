from .local import LocalCoordinator, log_job_action
from .models import JobDetails, JobRecord, JobStatus, OpResult
from .registry import JobRegistry

__all__ = [
    "JobDetails",
    "JobRecord",
    "JobRegistry",
    "JobStatus",
    "LocalCoordinator",
    "OpResult",
    "log_job_action",
]
