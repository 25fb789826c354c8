# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Public error contracts of the scheduler.
"""

from .errors import (
    CorrelationTimeout,
    InvalidScheduleSpec,
    JobAlreadyExists,
    JobNotFound,
    MalformedMessage,
    SchedulerError,
    ServiceStopped,
    TransportUnavailable,
    error_from_code,
)

__all__ = [
    "SchedulerError",
    "JobNotFound",
    "JobAlreadyExists",
    "InvalidScheduleSpec",
    "CorrelationTimeout",
    "ServiceStopped",
    "MalformedMessage",
    "TransportUnavailable",
    "error_from_code",
]
