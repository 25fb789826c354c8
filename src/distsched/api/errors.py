# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Error taxonomy for the scheduler.

Every error carries a stable `code` so that failures can cross the bus as plain
text + code and be rebuilt on the originating instance (see `error_from_code`).
"""

from typing import ClassVar


class SchedulerError(Exception):
    """Base class for all scheduler errors."""

    code: ClassVar[str] = "INTERNAL"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self)


class JobNotFound(SchedulerError):
    """No job with the given identity is registered on this instance."""

    code = "JOB_NOT_FOUND"


class JobAlreadyExists(SchedulerError):
    """`schedule` was called with an identity that is already registered."""

    code = "JOB_ALREADY_EXISTS"


class InvalidScheduleSpec(SchedulerError):
    """
    Neither a fire time nor a cron expression was supplied, or the cron
    expression could not be parsed.
    """

    code = "INVALID_SCHEDULE_SPEC"


class CorrelationTimeout(SchedulerError):
    """No peer answered a cross-instance request before its deadline."""

    code = "CORRELATION_TIMEOUT"


class ServiceStopped(SchedulerError):
    """The service is shutting down; pending and new remote operations fail."""

    code = "SERVICE_STOPPED"


class MalformedMessage(SchedulerError):
    """A bus payload could not be decoded into a known message variant."""

    code = "MALFORMED_MESSAGE"


class TransportUnavailable(SchedulerError):
    """The bus connection failed (publish or consume)."""

    code = "TRANSPORT_UNAVAILABLE"


_BY_CODE: dict[str, type[SchedulerError]] = {
    cls.code: cls
    for cls in (
        SchedulerError,
        JobNotFound,
        JobAlreadyExists,
        InvalidScheduleSpec,
        CorrelationTimeout,
        ServiceStopped,
        MalformedMessage,
        TransportUnavailable,
    )
}


def error_from_code(code: str | None, message: str | None) -> SchedulerError:
    """Rebuild a typed error from its wire form; unknown codes map to the base class."""
    cls = _BY_CODE.get(code or "", SchedulerError)
    return cls(message or "")
