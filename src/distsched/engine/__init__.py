# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Trigger computation and firing.
"""

from .cron import CronExpression, validate_cron
from .timer import TriggerEngine
from .triggers import Cron, OneShot, TriggerSpec, build_trigger_spec, compute_next_fire_time

__all__ = [
    "Cron",
    "CronExpression",
    "OneShot",
    "TriggerEngine",
    "TriggerSpec",
    "build_trigger_spec",
    "compute_next_fire_time",
    "validate_cron",
]
