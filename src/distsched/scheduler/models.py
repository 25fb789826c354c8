from __future__ import annotations

"""
Job-side data model: status enum, the registry record, the caller-facing job
details and the uniform operation result.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from enum import Enum
from typing import Any

from ..api.errors import InvalidScheduleSpec, SchedulerError
from ..core.types import DEFAULT_JOB_GROUP, JobKey, JobPayload
from ..engine.triggers import TriggerSpec, build_trigger_spec


class JobStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    RESCHEDULED = "RESCHEDULED"
    UNKNOWN = "UNKNOWN"


@dataclass
class JobRecord:
    """
    One registered job. `trigger` is replaced in place on reschedule; identity and
    payload never change. `revision` increases on every trigger replacement so a
    firing that started before a reschedule can tell its view is stale.
    """

    job_id: str
    job_group: str
    trigger: TriggerSpec
    job_name: str = ""
    description: str | None = None
    payload: JobPayload = field(default_factory=dict)
    revision: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> JobKey:
        return (self.job_id, self.job_group)

    @property
    def recurring(self) -> bool:
        return self.trigger.recurring


@dataclass
class JobDetails:
    """What a caller supplies to schedule a job."""

    job_id: str
    job_group: str = DEFAULT_JOB_GROUP
    job_name: str = ""
    schedule_time: datetime | None = None
    cron_expression: str | None = None
    job_data: JobPayload = field(default_factory=dict)
    description: str | None = None
    # accepted for compatibility; the trigger kind follows from cron vs schedule_time
    recurring: bool = False

    def to_record(self, tz: tzinfo = UTC) -> JobRecord:
        if not self.job_id:
            raise InvalidScheduleSpec("jobId must be a non-empty string")
        trigger = build_trigger_spec(fire_at=self.schedule_time, cron=self.cron_expression, tz=tz)
        return JobRecord(
            job_id=self.job_id,
            job_group=self.job_group or DEFAULT_JOB_GROUP,
            trigger=trigger,
            job_name=self.job_name or self.job_id,
            description=self.description,
            payload=dict(self.job_data or {}),
        )


@dataclass
class OpResult:
    """Uniform outcome of a coordinator operation."""

    success: bool
    message: str
    job_id: str | None = None
    data: Any = None
    error: SchedulerError | None = None

    @classmethod
    def ok(cls, message: str, *, job_id: str | None = None, data: Any = None) -> OpResult:
        return cls(success=True, message=message, job_id=job_id, data=data)

    @classmethod
    def fail(cls, message: str, error: SchedulerError, *, job_id: str | None = None) -> OpResult:
        return cls(success=False, message=message, job_id=job_id, error=error)
