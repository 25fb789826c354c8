from __future__ import annotations

import threading

from ..api.errors import JobAlreadyExists, JobNotFound
from ..core.types import JobId, JobKey
from ..engine.triggers import TriggerSpec
from .models import JobRecord, JobStatus


class JobRegistry:
    """
    In-memory map of job identity -> record, plus a status map keyed by job id.

    Status outlives the record: a cancelled or completed job keeps reporting its
    terminal status. All methods take the same re-entrant lock; callers that need
    several steps to be atomic hold `lock` around them.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._jobs: dict[JobKey, JobRecord] = {}
        self._status: dict[JobId, JobStatus] = {}

    def insert(self, record: JobRecord) -> None:
        with self.lock:
            if record.key in self._jobs:
                raise JobAlreadyExists(f"Job already exists: {record.job_id} ({record.job_group})")
            self._jobs[record.key] = record
            self._status[record.job_id] = JobStatus.SCHEDULED

    def remove(self, key: JobKey) -> JobRecord:
        with self.lock:
            rec = self._jobs.pop(key, None)
            if rec is None:
                raise JobNotFound(f"Job not found: {key[0]} ({key[1]})")
            return rec

    def get(self, key: JobKey) -> JobRecord | None:
        with self.lock:
            return self._jobs.get(key)

    def require(self, key: JobKey) -> JobRecord:
        rec = self.get(key)
        if rec is None:
            raise JobNotFound(f"Job not found: {key[0]} ({key[1]})")
        return rec

    def exists(self, key: JobKey) -> bool:
        with self.lock:
            return key in self._jobs

    def replace_trigger(self, key: JobKey, trigger: TriggerSpec) -> JobRecord:
        with self.lock:
            rec = self.require(key)
            rec.trigger = trigger
            rec.revision += 1
            return rec

    def set_status(self, job_id: JobId, status: JobStatus) -> None:
        with self.lock:
            self._status[job_id] = status

    def status(self, job_id: JobId) -> JobStatus:
        with self.lock:
            return self._status.get(job_id, JobStatus.UNKNOWN)

    def keys(self) -> list[JobKey]:
        with self.lock:
            return list(self._jobs.keys())

    def __len__(self) -> int:
        with self.lock:
            return len(self._jobs)
