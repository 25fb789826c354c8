# conftest.py
from __future__ import annotations

import os
import uuid
from typing import Any

import pytest
import pytest_asyncio

from distsched.coordinator.runner import DistributedCoordinator
from distsched.core.config import SchedulerConfig
from distsched.core.log import (
    bind_context,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
)
from tests.helpers import ChaosConfig, enable_chaos, setup_env


def pytest_configure(config):
    config.addinivalue_line("markers", "cfg(**overrides): per-test SchedulerConfig overrides")
    config.addinivalue_line("markers", "chaos: enable Kafka chaos mode (jitter/duplicates) for this test")


def pytest_addoption(parser):
    parser.addoption(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit distsched logs in JSON format during tests",
    )


@pytest.fixture(scope="session", autouse=True)
def _configure_distsched_logging(request):
    configure_from_env()
    prefer_json = request.config.getoption("--log-json")
    # unless the env already asked for stdout, turn it on (human-readable by default)
    if os.getenv("DISTSCHED_LOG_STDOUT", "").lower() not in ("1", "true", "yes", "on"):
        enable_stdout_logging(
            level="DEBUG",
            json_output=prefer_json,
            pretty=not prefer_json,
            route_errors_to_stderr=True,
        )
    bind_context(role="pytest")


@pytest.fixture(scope="session")
def session_run_id():
    return uuid.uuid4().hex[:8]


@pytest.fixture(autouse=True)
def _test_log_context(request, session_run_id):
    log = get_logger("test")
    with log_context(pytest_nodeid=request.node.nodeid, test=request.node.name, test_run=session_run_id):
        log.debug("pytest.test.start", event="pytest.test.start")
        yield


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    if rep.when == "call":
        log = get_logger("test")
        with log_context(pytest_nodeid=item.nodeid, test=item.name):
            log.debug(
                "pytest.test.finish",
                event="pytest.test.finish",
                outcome=rep.outcome,
                duration=getattr(rep, "duration", None),
            )


_FAST_CFG: dict[str, Any] = {
    "poll_timeout_sec": 0.02,
    "response_timeout_ms": 1_000,
    "transport_backoff_min_ms": 10,
    "transport_backoff_max_ms": 50,
    "shutdown_grace_sec": 1.0,
}


@pytest.fixture
def tlog():
    return get_logger("test")


@pytest.fixture(scope="function")
def inmem_kafka(monkeypatch, request):
    """In-memory Kafka in place of aiokafka; chaos on demand via @pytest.mark.chaos."""
    setup_env(monkeypatch)
    if request.node.get_closest_marker("chaos"):
        enable_chaos(ChaosConfig(broker_delay_range=(0.0, 0.003), dup_prob_by_topic={"scheduler-responses": 1.0}))
    else:
        enable_chaos(None)
    from tests.helpers import BROKER

    return BROKER


@pytest.fixture
def make_cfg(request):
    m = request.node.get_closest_marker("cfg")
    marker_overrides = dict(m.kwargs) if m else {}

    def _make(instance_id: str, **overrides: Any) -> SchedulerConfig:
        return SchedulerConfig.load(
            overrides={"instance_id": instance_id, **_FAST_CFG, **marker_overrides, **overrides}
        )

    return _make


@pytest_asyncio.fixture
async def cluster(inmem_kafka, make_cfg):
    """
    Factory: `await cluster("a", "b")` starts one coordinator per instance id on the
    shared in-memory broker. Everything is stopped at teardown.
    """
    started: list[DistributedCoordinator] = []

    async def _spawn(*instance_ids: str, **kw: Any) -> list[DistributedCoordinator]:
        out = []
        for iid in instance_ids:
            c = DistributedCoordinator(cfg=make_cfg(iid), **kw)
            await c.start()
            started.append(c)
            out.append(c)
        return out

    try:
        yield _spawn
    finally:
        for c in reversed(started):
            try:
                await c.stop()
            except Exception:
                pass
