# src/distsched/protocol/messages.py
from __future__ import annotations

"""
Scheduler bus protocol
======================

Wire-level messages exchanged between scheduler instances over Kafka.

Design principles:
- One model per message kind; decoding dispatches on the `type` tag.
- Pydantic v2 models with `extra="forbid"` to fail fast on unknown fields.
- camelCase field names on the wire (`messageId`, `jobId`, ...).
- All timestamps are **epoch milliseconds** (UTC).

Requests travel on the request topic keyed by job id; responses travel on the
response topic keyed by correlation id (`messageId`).
"""

import time
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ..api.errors import MalformedMessage
from ..core.types import InstanceId
from ..core.utils import loads


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class MessageType(str, Enum):
    """Top-level message kind on the wire."""

    CANCEL_JOB = "CANCEL_JOB"
    RESCHEDULE_JOB = "RESCHEDULE_JOB"
    CANCEL_RESPONSE = "CANCEL_RESPONSE"
    RESCHEDULE_RESPONSE = "RESCHEDULE_RESPONSE"


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    correlation_id: str = Field(alias="messageId", min_length=1)
    timestamp: int = Field(default_factory=_now_ms)


# --------------------------------------------------------------------------- #
# Requests (originating instance -> every peer)
# --------------------------------------------------------------------------- #


class _RequestBase(_WireModel):
    job_id: str = Field(alias="jobId", min_length=1)
    job_group: str = Field(alias="jobGroup", min_length=1)
    origin_instance: InstanceId = Field(alias="instanceId", min_length=1)


class CancelRequest(_RequestBase):
    """Ask the owner of (jobId, jobGroup) to cancel it."""

    type: Literal["CANCEL_JOB"] = "CANCEL_JOB"


class RescheduleRequest(_RequestBase):
    """
    Ask the owner of (jobId, jobGroup) to replace its trigger.

    At least one of `newScheduleTime` / `newCronExpression` must be present.
    `newScheduleTime` is ISO-8601; a naive value is a wall-clock time in the
    owner's configured time zone.
    """

    type: Literal["RESCHEDULE_JOB"] = "RESCHEDULE_JOB"
    new_schedule_time: datetime | None = Field(default=None, alias="newScheduleTime")
    new_cron_expression: str | None = Field(default=None, alias="newCronExpression")

    @model_validator(mode="after")
    def _one_schedule_field(self) -> RescheduleRequest:
        has_cron = bool(self.new_cron_expression and self.new_cron_expression.strip())
        if self.new_schedule_time is None and not has_cron:
            raise ValueError("newScheduleTime or newCronExpression is required")
        return self


# --------------------------------------------------------------------------- #
# Responses (peer -> everyone; matched by the originator)
# --------------------------------------------------------------------------- #


class _ResponseBase(_WireModel):
    success: bool
    error_message: str | None = Field(default=None, alias="errorMessage")
    error_code: str | None = Field(default=None, alias="errorCode")
    job_id: str | None = Field(default=None, alias="jobId")


class CancelResponse(_ResponseBase):
    type: Literal["CANCEL_RESPONSE"] = "CANCEL_RESPONSE"


class RescheduleResponse(_ResponseBase):
    type: Literal["RESCHEDULE_RESPONSE"] = "RESCHEDULE_RESPONSE"


RequestMessage = Union[CancelRequest, RescheduleRequest]
ResponseMessage = Union[CancelResponse, RescheduleResponse]

SchedulerMessage = Annotated[
    Union[CancelRequest, RescheduleRequest, CancelResponse, RescheduleResponse],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(SchedulerMessage)


# --------------------------------------------------------------------------- #
# Codec
# --------------------------------------------------------------------------- #


def encode_message(msg: BaseModel) -> dict[str, Any]:
    """JSON-ready dict with wire (camelCase) field names; absent optionals are dropped."""
    return msg.model_dump(mode="json", by_alias=True, exclude_none=True)


def decode_message(raw: bytes | str | dict[str, Any] | None) -> RequestMessage | ResponseMessage:
    """
    Parse a bus payload into its message variant.

    Raises MalformedMessage for undecodable JSON, an unknown `type` tag or
    missing/extra fields.
    """
    if raw is None:
        raise MalformedMessage("empty payload")
    try:
        data = loads(raw) if isinstance(raw, (bytes, bytearray, str)) else raw
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessage(f"payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("payload must be a JSON object")
    try:
        return _ADAPTER.validate_python(data)
    except ValidationError as e:
        raise MalformedMessage(f"invalid scheduler message: {e.error_count()} error(s)") from e


def response_for(
    request: RequestMessage,
    *,
    success: bool,
    error_message: str | None = None,
    error_code: str | None = None,
) -> ResponseMessage:
    """Build the response variant matching `request`, carrying its correlation id."""
    cls = CancelResponse if isinstance(request, CancelRequest) else RescheduleResponse
    return cls(
        correlation_id=request.correlation_id,
        success=success,
        error_message=None if success else error_message,
        error_code=None if success else error_code,
        job_id=request.job_id,
    )
