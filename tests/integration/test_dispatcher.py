from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from distsched.core.utils import dumps
from distsched.protocol.messages import CancelRequest, RescheduleRequest, encode_message
from distsched.scheduler.models import JobDetails, JobStatus
from tests.helpers import wait_until

pytestmark = pytest.mark.integration

REQUESTS = "scheduler-requests"
RESPONSES = "scheduler-responses"


def _schedule(coord, job_id: str = "job-1") -> None:
    res = coord.schedule_job(
        JobDetails(job_id=job_id, schedule_time=datetime.now(UTC) + timedelta(minutes=5))
    )
    assert res.success


@pytest.mark.asyncio
async def test_every_peer_request_gets_exactly_one_response(cluster, inmem_kafka):
    (owner,) = await cluster("owner")
    _schedule(owner)

    for i, job_id in enumerate(["job-1", "missing"]):
        req = CancelRequest(correlation_id=f"c{i}", job_id=job_id, job_group="default", origin_instance="peer")
        await inmem_kafka.inject(REQUESTS, dumps(encode_message(req)))

    await wait_until(lambda: len(inmem_kafka.published(RESPONSES)) == 2)
    by_id = {r["messageId"]: r for r in inmem_kafka.published(RESPONSES)}
    assert by_id["c0"]["success"] is True
    assert by_id["c0"]["type"] == "CANCEL_RESPONSE"
    assert "errorMessage" not in by_id["c0"]
    assert by_id["c1"]["success"] is False
    assert by_id["c1"]["errorCode"] == "JOB_NOT_FOUND"
    assert owner.status("job-1") is JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_invalid_reschedule_from_peer_is_answered_with_the_error(cluster, inmem_kafka):
    (owner,) = await cluster("owner")
    _schedule(owner)
    req = RescheduleRequest(
        correlation_id="r1",
        job_id="job-1",
        job_group="default",
        origin_instance="peer",
        new_cron_expression="0 0 0 L * ?",
    )
    await inmem_kafka.inject(REQUESTS, dumps(encode_message(req)))
    await wait_until(lambda: len(inmem_kafka.published(RESPONSES)) == 1)
    (resp,) = inmem_kafka.published(RESPONSES)
    assert resp["success"] is False
    assert resp["errorCode"] == "INVALID_SCHEDULE_SPEC"
    assert owner.status("job-1") is JobStatus.SCHEDULED


@pytest.mark.asyncio
async def test_malformed_records_are_dropped_and_the_loop_survives(cluster, inmem_kafka):
    (owner,) = await cluster("owner")
    _schedule(owner)

    await inmem_kafka.inject(REQUESTS, b"{not json")
    await inmem_kafka.inject(REQUESTS, dumps({"type": "DROP_TABLES", "messageId": "x"}))
    good = CancelRequest(correlation_id="ok", job_id="job-1", job_group="default", origin_instance="peer")
    await inmem_kafka.inject(REQUESTS, dumps(encode_message(good)))

    await wait_until(lambda: len(inmem_kafka.published(RESPONSES)) == 1)
    assert inmem_kafka.published(RESPONSES)[0]["messageId"] == "ok"
    assert owner.dispatcher.running


@pytest.mark.asyncio
async def test_unmatched_responses_are_ignored_by_the_listener(cluster, inmem_kafka):
    (a,) = await cluster("a")
    stray = {"type": "CANCEL_RESPONSE", "messageId": "nobody-waits", "success": True, "timestamp": 1}
    await inmem_kafka.inject(RESPONSES, dumps(stray))
    await asyncio.sleep(0.1)
    assert a.listener.running
    assert a.correlator.pending_count() == 0


@pytest.mark.asyncio
async def test_poll_failures_back_off_and_recover(cluster, inmem_kafka):
    (owner,) = await cluster("owner")
    _schedule(owner)
    inmem_kafka.fail_polls = 3
    req = CancelRequest(correlation_id="after-outage", job_id="job-1", job_group="default", origin_instance="peer")
    await inmem_kafka.inject(REQUESTS, dumps(encode_message(req)))
    await wait_until(lambda: len(inmem_kafka.published(RESPONSES)) == 1, timeout=3.0)
    assert owner.status("job-1") is JobStatus.CANCELLED
