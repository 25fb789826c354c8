from __future__ import annotations

"""
distsched.core.log
==================

Structured logging for scheduler instances, built on the stdlib `logging` module.

Every record can carry scheduler fields (instance_id, job_id, job_group,
correlation_id, request_id). They come from two places: keyword arguments on the
call (`log.info("job.fired", event="job.fired", job_id=...)`) and the ambient
context set with `bind_context` / `log_context`, which follows asyncio tasks
through contextvars.

Nothing is printed until an entrypoint opts in with `configure_from_env()` or
`enable_stdout_logging()`; until then the `distsched` logger only has a
NullHandler.
"""

import contextvars
import json
import logging
import os
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "LogSettings",
    "bind_context",
    "configure_from_env",
    "disable_stdout_logging",
    "enable_stdout_logging",
    "get_logger",
    "log_context",
    "set_level",
    "swallow",
    "warn_once",
]

ROOT = "distsched"

# fields shown inline by the human formatter, in this order
SCHED_FIELDS: tuple[str, ...] = ("instance_id", "job_id", "job_group", "correlation_id", "request_id")

_RESERVED: frozenset[str] = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

_ctx: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar("distsched_log_ctx", default={})


def _merged(fields: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(_ctx.get())
    out.update((k, v) for k, v in fields.items() if v is not None)
    return out


def bind_context(**fields: Any) -> None:
    """
    Add fields to the log context of the current task for good.
    Long-lived components call this once (e.g. the coordinator with its instance id).
    """
    _ctx.set(_merged(fields))


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Scope fields to a block; the previous context is restored on exit."""
    token = _ctx.set(_merged(fields))
    try:
        yield
    finally:
        _ctx.reset(token)


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Context first, then per-call fields (which win on conflicts)."""
    fields = dict(_ctx.get())
    fields.update((k, v) for k, v in record.__dict__.items() if k not in _RESERVED)
    return fields


# ---------- formatters ----------


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, event, message, then fields."""

    def __init__(self, *, include_stack: bool = False) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds")
        doc: dict[str, Any] = {"ts": ts.replace("+00:00", "Z"), "level": record.levelname, "logger": record.name}
        fields = _record_fields(record)
        if "event" in fields:
            doc["event"] = fields.pop("event")
        msg = record.getMessage()
        if msg and msg != doc.get("event"):
            doc["message"] = msg
        for k, v in fields.items():
            doc.setdefault(k, v)

        if record.exc_info and record.exc_info[0] is not None:
            err: dict[str, Any] = {"type": record.exc_info[0].__name__, "message": str(record.exc_info[1])}
            if self.include_stack:
                err["stack"] = self.formatException(record.exc_info)
            doc["error"] = err

        return json.dumps(doc, ensure_ascii=False, separators=(",", ":"), default=str)


class HumanFormatter(logging.Formatter):
    """`time LEVEL logger: message  [instance_id=.., job_id=..]` for local runs."""

    default_time_format = "%H:%M:%S"
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        fields = _record_fields(record)
        line = f"{self.formatTime(record)} {record.levelname:<5} {record.name}: {record.getMessage()}"
        shown = [f"{k}={fields[k]}" for k in SCHED_FIELDS if fields.get(k) is not None]
        if shown:
            line = f"{line}  [{', '.join(shown)}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class _BelowError(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


# ---------- adapter ----------


class FieldLogger(logging.LoggerAdapter):
    """
    Accepts structured fields as keyword arguments:

        log.info("job.cancelled", event="job.cancelled", job_id=job_id)

    Fields that collide with LogRecord attributes are stored as `field_<name>`.
    """

    _passthrough = frozenset({"exc_info", "stack_info", "stacklevel"})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._passthrough]:
            value = kwargs.pop(key)
            extra.setdefault(f"field_{key}" if key in _RESERVED else key, value)
        kwargs["extra"] = extra
        return msg, kwargs


def _as_field_logger(logger: logging.Logger | logging.LoggerAdapter) -> logging.LoggerAdapter:
    return logger if isinstance(logger, logging.LoggerAdapter) else FieldLogger(logger, {})


_root_ready = False


def _ensure_root() -> logging.Logger:
    global _root_ready
    lg = logging.getLogger(ROOT)
    if not _root_ready:
        if lg.level == logging.NOTSET:
            lg.setLevel(logging.INFO)
        if not lg.handlers:
            lg.addHandler(logging.NullHandler())
        _root_ready = True
    return lg


def get_logger(name: str | None = None) -> logging.LoggerAdapter:
    """`distsched.<name>` wrapped in a FieldLogger."""
    root = _ensure_root()
    return FieldLogger(root.getChild(name) if name else root, {})


_warned: set[str] = set()
_warned_lock = threading.Lock()


def warn_once(
    logger: logging.Logger | logging.LoggerAdapter,
    code: str,
    msg: str,
    *,
    level: int = logging.WARNING,
    **fields: Any,
) -> None:
    """Emit `msg` the first time `code` is seen in this process, then stay quiet."""
    with _warned_lock:
        first = code not in _warned
        _warned.add(code)
    if first:
        _as_field_logger(logger).log(level, msg, code=code, **fields)


# ---------- configuration ----------

_OUT_HANDLER = "distsched.stdout"
_ERR_HANDLER = "distsched.stderr"


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {value!r}")
    return resolved


def set_level(level: int | str) -> None:
    _ensure_root().setLevel(_level(level))


def disable_stdout_logging() -> None:
    lg = logging.getLogger(ROOT)
    for h in [h for h in lg.handlers if h.get_name() in (_OUT_HANDLER, _ERR_HANDLER)]:
        lg.removeHandler(h)


def enable_stdout_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = True,
    include_stack: bool = False,
    pretty: bool = False,
    route_errors_to_stderr: bool = False,
) -> None:
    """
    Attach console handlers to the `distsched` logger, replacing earlier ones.
    `pretty` selects the human formatter over JSON. With `route_errors_to_stderr`
    ERROR and above go to stderr and everything below to stdout.
    """
    lvl = _level(level)
    lg = _ensure_root()
    lg.setLevel(min(lg.level, lvl))
    disable_stdout_logging()

    if pretty:
        fmt: logging.Formatter = HumanFormatter()
    elif json_output:
        fmt = JsonFormatter(include_stack=include_stack)
    else:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    targets = [(_OUT_HANDLER, sys.stdout, lvl)]
    if route_errors_to_stderr:
        targets.append((_ERR_HANDLER, sys.stderr, max(lvl, logging.ERROR)))
    for name, stream, handler_level in targets:
        h = logging.StreamHandler(stream)
        h.set_name(name)
        h.setLevel(handler_level)
        h.setFormatter(fmt)
        if route_errors_to_stderr and name == _OUT_HANDLER:
            h.addFilter(_BelowError())
        lg.addHandler(h)


def _truthy(raw: str | None) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LogSettings:
    """Console logging switches read from DISTSCHED_LOG_* variables."""

    stdout: bool = False
    level: str = "INFO"
    pretty: bool = False
    include_stack: bool = False

    @classmethod
    def from_env(cls, *, default_stdout: bool = False) -> LogSettings:
        raw_stdout = os.environ.get("DISTSCHED_LOG_STDOUT")
        return cls(
            stdout=_truthy(raw_stdout) if raw_stdout is not None else default_stdout,
            level=os.environ.get("DISTSCHED_LOG_LEVEL", "INFO"),
            pretty=_truthy(os.environ.get("DISTSCHED_LOG_PRETTY")),
            include_stack=_truthy(os.environ.get("DISTSCHED_LOG_STACK")),
        )


def configure_from_env(*, default_stdout: bool = False) -> LogSettings:
    """
    Apply DISTSCHED_LOG_STDOUT, DISTSCHED_LOG_LEVEL, DISTSCHED_LOG_PRETTY and
    DISTSCHED_LOG_STACK. `default_stdout` decides when DISTSCHED_LOG_STDOUT is unset
    (the server entrypoint passes True, the library default is silence).
    """
    settings = LogSettings.from_env(default_stdout=default_stdout)
    set_level(settings.level)
    if settings.stdout:
        enable_stdout_logging(
            level=settings.level,
            json_output=not settings.pretty,
            include_stack=settings.include_stack,
            pretty=settings.pretty,
        )
    else:
        disable_stdout_logging()
    return settings


# ---------- swallow ----------


@contextmanager
def swallow(
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    level: int = logging.DEBUG,
    code: str,
    msg: str | None = None,
    reraise: bool = False,
    extra: Mapping[str, Any] | None = None,
    expected: bool = True,
) -> Iterator[None]:
    """
    Log an exception raised in the block instead of propagating it.

        with swallow(logger=log, code="bus.stop", msg="bus stop failed", level=logging.ERROR):
            await bus.stop()
    """
    try:
        yield
    except Exception as e:
        fields = {**(extra or {}), "code": code, "expected": expected}
        _as_field_logger(logger or get_logger("swallow")).log(level, msg or "suppressed exception", exc_info=e, **fields)
        if reraise:
            raise
