from __future__ import annotations

"""
distsched.core.config
=====================

Strongly-typed configuration for one scheduler instance.
- No external deps; optional JSON file loading.
- Derives millisecond fields from seconds to avoid repeated conversions.
- Small env overrides for container deployments.

The value is built once at startup and passed explicitly into every component.
"""

import json
import os
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .types import DEFAULT_RESPONSE_TIMEOUT_MS


def _try_load_json(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        # Fail soft (env/overrides may still provide everything)
        pass
    return {}


_ENV_KEYS: dict[str, tuple[str, type]] = {
    "SCHEDULER_INSTANCE_ID": ("instance_id", str),
    "KAFKA_BOOTSTRAP_SERVERS": ("kafka_bootstrap", str),
    "SCHEDULER_HOST": ("http_host", str),
    "SCHEDULER_PORT": ("http_port", int),
    "SCHEDULER_CONTEXT_PATH": ("context_path", str),
    "SCHEDULER_TIMEZONE": ("timezone", str),
    "SCHEDULER_RESPONSE_TIMEOUT_MS": ("response_timeout_ms", int),
}


@dataclass
class SchedulerConfig:
    """Instance configuration loaded from JSON/env with derived millisecond fields."""

    # ---- Identity
    instance_id: str = field(default_factory=lambda: f"sched-{uuid.uuid4().hex[:8]}")

    # ---- Bus / Kafka
    kafka_bootstrap: str = "localhost:9092"
    topic_requests: str = "scheduler-requests"
    topic_responses: str = "scheduler-responses"
    group_prefix: str = "scheduler"

    # ---- HTTP
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    context_path: str = "/sch"

    # ---- Scheduling
    timezone: str = "UTC"

    # ---- Timings
    response_timeout_ms: int = DEFAULT_RESPONSE_TIMEOUT_MS
    poll_timeout_sec: float = 1.0
    transport_backoff_min_ms: int = 250
    transport_backoff_max_ms: int = 5_000
    shutdown_grace_sec: float = 5.0

    # ---- Derived (ms)
    poll_timeout_ms: int = 0
    shutdown_grace_ms: int = 0

    # ---- Methods ------------------------------------------------------------

    def __post_init__(self) -> None:
        if not self.instance_id:
            raise ValueError("instance_id must be a non-empty string")
        if not self.kafka_bootstrap:
            raise ValueError("kafka_bootstrap must be a non-empty string")
        if not self.topic_requests or not self.topic_responses:
            raise ValueError("topic names must be non-empty strings")
        if self.topic_requests == self.topic_responses:
            raise ValueError("request and response topics must differ")
        if self.response_timeout_ms <= 0:
            raise ValueError("response_timeout_ms must be positive")
        if self.transport_backoff_min_ms <= 0 or self.transport_backoff_max_ms < self.transport_backoff_min_ms:
            raise ValueError("transport backoff bounds must satisfy 0 < min <= max")
        if not (0 < int(self.http_port) < 65536):
            raise ValueError("http_port must be in 1..65535")
        self.http_port = int(self.http_port)
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {self.timezone!r}") from e
        if self.context_path and not self.context_path.startswith("/"):
            self.context_path = "/" + self.context_path
        self.context_path = self.context_path.rstrip("/")
        self._derive_ms()

    def _derive_ms(self) -> None:
        self.poll_timeout_ms = int(self.poll_timeout_sec * 1000)
        self.shutdown_grace_ms = int(self.shutdown_grace_sec * 1000)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    # Consumer groups are private per instance: every instance sees every message.
    @property
    def request_group(self) -> str:
        return f"{self.group_prefix}.requests.{self.instance_id}"

    @property
    def response_group(self) -> str:
        return f"{self.group_prefix}.responses.{self.instance_id}"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    # Loader
    @classmethod
    def load(cls, path: Path | str | None = None, *, overrides: dict[str, Any] | None = None) -> SchedulerConfig:
        """
        Load config from JSON file (if provided), then apply env and overrides.

        Env overrides:
          - SCHEDULER_INSTANCE_ID, KAFKA_BOOTSTRAP_SERVERS
          - SCHEDULER_HOST, SCHEDULER_PORT, SCHEDULER_CONTEXT_PATH
          - SCHEDULER_TIMEZONE, SCHEDULER_RESPONSE_TIMEOUT_MS
        """
        data: dict[str, Any] = {}

        file_path: Path | None = Path(path) if path else None
        data.update(_try_load_json(file_path))

        for env_name, (key, conv) in _ENV_KEYS.items():
            raw = os.getenv(env_name)
            if raw:
                try:
                    data[key] = conv(raw)
                except ValueError as e:
                    raise ValueError(f"invalid value for {env_name}: {raw!r}") from e

        if overrides:
            data.update(overrides)

        # derived fields are recomputed, never loaded
        data.pop("poll_timeout_ms", None)
        data.pop("shutdown_grace_ms", None)
        return cls(**data)
