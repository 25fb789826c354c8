from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest

from distsched.api.errors import InvalidScheduleSpec, JobAlreadyExists, JobNotFound
from distsched.core.time import ManualClock
from distsched.engine.triggers import Cron, OneShot
from distsched.scheduler.local import LocalCoordinator
from distsched.scheduler.models import JobDetails, JobRecord, JobStatus

pytestmark = pytest.mark.unit

START = datetime(2030, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def local(clock) -> LocalCoordinator:
    return LocalCoordinator(clock=clock)


def _one_shot(job_id: str = "job-001", group: str = "default", *, minutes: int = 5) -> JobRecord:
    return JobRecord(job_id=job_id, job_group=group, trigger=OneShot(START + timedelta(minutes=minutes)))


def test_schedule_then_cancel_scenario(local):
    fire_at = local.schedule(_one_shot())
    assert fire_at == START + timedelta(minutes=5)
    assert local.status("job-001") is JobStatus.SCHEDULED
    assert local.exists("job-001", "default")

    local.cancel("job-001", "default")
    assert local.status("job-001") is JobStatus.CANCELLED
    assert not local.exists("job-001", "default")
    assert local.next_fire_time("job-001", "default") is None

    with pytest.raises(JobNotFound):
        local.cancel("job-001", "default")
    assert local.status("job-001") is JobStatus.CANCELLED


def test_schedule_twice_keeps_the_original(local):
    local.schedule(_one_shot(minutes=5))
    with pytest.raises(JobAlreadyExists):
        local.schedule(_one_shot(minutes=30))
    assert local.next_fire_time("job-001", "default") == START + timedelta(minutes=5)
    assert local.list_jobs() == [("job-001", "default")]


def test_reschedule_unknown_job_leaves_no_record(local):
    with pytest.raises(JobNotFound):
        local.reschedule("ghost", "default", new_cron="0 0 * * * ?")
    assert not local.exists("ghost", "default")
    assert local.status("ghost") is JobStatus.UNKNOWN


def test_reschedule_with_cron_only(local):
    local.schedule(_one_shot())
    nxt = local.reschedule("job-001", "default", new_cron="0 0 * * * ?")
    assert nxt == START + timedelta(hours=1)
    assert local.status("job-001") is JobStatus.RESCHEDULED
    rec = local.get("job-001", "default")
    assert isinstance(rec.trigger, Cron)
    assert rec.recurring is True


def test_reschedule_without_fields_is_invalid(local):
    local.schedule(_one_shot())
    with pytest.raises(InvalidScheduleSpec):
        local.reschedule("job-001", "default")
    assert local.status("job-001") is JobStatus.SCHEDULED


def test_reschedule_with_malformed_cron_keeps_old_trigger(local):
    local.schedule(_one_shot())
    with pytest.raises(InvalidScheduleSpec):
        local.reschedule("job-001", "default", new_cron="0 0 0 L * ?")
    assert isinstance(local.get("job-001", "default").trigger, OneShot)


def test_reschedule_cron_wins_over_fire_time(local):
    local.schedule(_one_shot())
    local.reschedule(
        "job-001", "default", new_fire_time=START + timedelta(days=3), new_cron="0 30 * * * ?"
    )
    assert local.next_fire_time("job-001", "default") == START + timedelta(minutes=30)


def test_reschedule_preserves_identity_and_payload(local):
    rec = _one_shot()
    rec.payload = {"k": [1, 2]}
    local.schedule(rec)
    local.reschedule("job-001", "default", new_fire_time=START + timedelta(hours=2))
    got = local.get("job-001", "default")
    assert got.payload == {"k": [1, 2]}
    assert local.next_fire_time("job-001", "default") == START + timedelta(hours=2)


def test_recurring_flag_with_only_a_time_is_a_one_shot(local):
    record = JobDetails(job_id="r", schedule_time=START + timedelta(minutes=5), recurring=True).to_record()
    assert isinstance(record.trigger, OneShot)
    assert not record.recurring
    assert local.schedule(record) == START + timedelta(minutes=5)
    assert local.status("r") is JobStatus.SCHEDULED


def test_cron_makes_a_job_recurring_even_without_the_flag():
    record = JobDetails(job_id="c", cron_expression="0 0 * * * ?").to_record()
    assert isinstance(record.trigger, Cron)
    assert record.recurring


def test_details_with_neither_time_nor_cron_are_invalid():
    with pytest.raises(InvalidScheduleSpec):
        JobDetails(job_id="x").to_record()


@pytest.mark.asyncio
async def test_one_shot_completes_and_is_removed(clock):
    fired: list[str] = []
    local = LocalCoordinator(clock=clock, action=lambda rec, at: fired.append(rec.job_id))
    local.schedule(_one_shot(minutes=1))
    clock.advance(60_000)
    await asyncio.gather(*local.engine.fire_due())
    assert fired == ["job-001"]
    assert local.status("job-001") is JobStatus.COMPLETED
    assert not local.exists("job-001", "default")


@pytest.mark.asyncio
async def test_one_shot_action_failure_marks_failed(clock):
    def boom(rec, at):
        raise RuntimeError("action failed")

    local = LocalCoordinator(clock=clock, action=boom)
    local.schedule(_one_shot(minutes=1))
    clock.advance(60_000)
    await asyncio.gather(*local.engine.fire_due())
    assert local.status("job-001") is JobStatus.FAILED
    assert not local.exists("job-001", "default")


@pytest.mark.asyncio
async def test_recurring_failure_stays_armed_and_recovers(clock):
    attempts: list[int] = []

    async def flaky(rec, at):
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("first run fails")

    local = LocalCoordinator(clock=clock, action=flaky)
    local.schedule(JobRecord(job_id="tick", job_group="default", trigger=Cron.parse("0 * * * * ?")))

    clock.advance(60_000)
    await asyncio.gather(*local.engine.fire_due())
    assert local.status("tick") is JobStatus.FAILED
    assert local.exists("tick", "default")

    clock.advance(60_000)
    await asyncio.gather(*local.engine.fire_due())
    assert local.status("tick") is JobStatus.SCHEDULED
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_cancel_during_run_is_not_overwritten(clock):
    gate = asyncio.Event()
    started = asyncio.Event()

    async def slow(rec, at):
        started.set()
        await gate.wait()

    local = LocalCoordinator(clock=clock, action=slow)
    local.schedule(_one_shot(minutes=1))
    clock.advance(60_000)
    tasks = local.engine.fire_due()
    await started.wait()
    assert local.status("job-001") is JobStatus.RUNNING

    local.cancel("job-001", "default")
    gate.set()
    await asyncio.gather(*tasks)
    assert local.status("job-001") is JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_reschedule_during_run_keeps_the_new_trigger(clock):
    gate = asyncio.Event()
    started = asyncio.Event()

    async def slow(rec, at):
        started.set()
        await gate.wait()

    local = LocalCoordinator(clock=clock, action=slow)
    local.schedule(_one_shot(minutes=1))
    clock.advance(60_000)
    tasks = local.engine.fire_due()
    await started.wait()

    local.reschedule("job-001", "default", new_fire_time=START + timedelta(hours=1))
    gate.set()
    await asyncio.gather(*tasks)
    assert local.exists("job-001", "default")
    assert local.status("job-001") is JobStatus.RESCHEDULED
    assert local.next_fire_time("job-001", "default") == START + timedelta(hours=1)


@pytest.mark.asyncio
async def test_shutdown_disarms_everything(clock):
    local = LocalCoordinator(clock=clock)
    await local.start()
    local.schedule(_one_shot("a", minutes=1))
    local.schedule(JobRecord(job_id="b", job_group="default", trigger=Cron.parse("0 0 * * * ?")))
    assert local.engine.armed_count() == 2
    await local.shutdown()
    assert local.engine.armed_count() == 0


@pytest.mark.asyncio
async def test_concurrent_operations_on_one_job_never_tear_its_state(local):
    await local.start()
    key = ("contended", "default")

    def worker(seed: int) -> None:
        for i in range(200):
            op = (seed + i) % 3
            try:
                if op == 0:
                    local.schedule(_one_shot(*key, minutes=5 + i % 7))
                elif op == 1:
                    local.cancel(*key)
                else:
                    local.reschedule(*key, new_fire_time=START + timedelta(minutes=10 + i % 5))
            except (JobAlreadyExists, JobNotFound):
                pass

    try:
        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(max_workers=6) as pool:
            await asyncio.gather(*(loop.run_in_executor(pool, worker, n) for n in range(6)))

        status = local.status("contended")
        if local.exists(*key):
            assert status in (JobStatus.SCHEDULED, JobStatus.RESCHEDULED)
            assert local.next_fire_time(*key) is not None
        else:
            assert status is JobStatus.CANCELLED
            assert local.next_fire_time(*key) is None
        assert local.engine.armed_count() == len(local.registry)
    finally:
        await local.shutdown()
