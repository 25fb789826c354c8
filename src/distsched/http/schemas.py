"""
HTTP request/response bodies. Field names on the wire are camelCase.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..core.types import DEFAULT_JOB_GROUP
from ..scheduler.models import JobDetails


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateJobRequest(_Body):
    job_id: str = Field(alias="jobId", min_length=1)
    job_name: str = Field(default="", alias="jobName")
    job_group: str = Field(default=DEFAULT_JOB_GROUP, alias="jobGroup", min_length=1)
    schedule_time: datetime | None = Field(default=None, alias="scheduleTime")
    cron_expression: str | None = Field(default=None, alias="cronExpression")
    job_data: dict[str, Any] = Field(default_factory=dict, alias="jobData")
    description: str | None = None
    recurring: bool = False

    def to_details(self) -> JobDetails:
        return JobDetails(
            job_id=self.job_id,
            job_group=self.job_group,
            job_name=self.job_name,
            schedule_time=self.schedule_time,
            cron_expression=self.cron_expression,
            job_data=self.job_data,
            description=self.description,
            recurring=self.recurring,
        )


class RescheduleJobRequest(_Body):
    job_id: str = Field(alias="jobId", min_length=1)
    job_group: str = Field(default=DEFAULT_JOB_GROUP, alias="jobGroup", min_length=1)
    new_schedule_time: datetime | None = Field(default=None, alias="newScheduleTime")
    new_cron_expression: str | None = Field(default=None, alias="newCronExpression")


class CancelJobRequest(_Body):
    job_id: str = Field(alias="jobId", min_length=1)
    job_group: str = Field(default=DEFAULT_JOB_GROUP, alias="jobGroup", min_length=1)


class ApiResponse(BaseModel):
    """The envelope every endpoint answers with."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    job_id: str | None = Field(default=None, alias="jobId")
    data: Any = None

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
