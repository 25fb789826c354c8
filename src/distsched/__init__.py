from __future__ import annotations

try:
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("distsched")
except PackageNotFoundError:  # pragma: no cover
    # running from a source checkout without an install
    __version__ = "0.0.0"

from .coordinator.runner import DistributedCoordinator
from .core.config import SchedulerConfig
from .scheduler.models import JobDetails, JobStatus, OpResult

__all__ = [
    "DistributedCoordinator",
    "JobDetails",
    "JobStatus",
    "OpResult",
    "SchedulerConfig",
    "__version__",
]
