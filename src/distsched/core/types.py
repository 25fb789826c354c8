from __future__ import annotations

"""
Type aliases for job identity and timing, plus the defaults shared by the HTTP
surface, the wire protocol and the config.
"""

from typing import Any, Final

Millis = int

JobId = str
JobGroup = str
JobKey = tuple[JobId, JobGroup]
JobPayload = dict[str, Any]  # opaque to the scheduler, passed through untouched

InstanceId = str
CorrelationId = str

DEFAULT_JOB_GROUP: Final[JobGroup] = "default"
DEFAULT_RESPONSE_TIMEOUT_MS: Final[Millis] = 10_000
