"""
FastAPI surface of one scheduler instance.

The app owns its coordinator through the lifespan: the coordinator starts before
the first request is served and stops after the last one. All routes live under
`cfg.context_path` (default `/sch`) and answer with the `{success, message,
jobId, data}` envelope.
"""
from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .. import __version__
from ..api.errors import (
    CorrelationTimeout,
    InvalidScheduleSpec,
    JobAlreadyExists,
    JobNotFound,
    SchedulerError,
    ServiceStopped,
    TransportUnavailable,
)
from ..coordinator.runner import DistributedCoordinator
from ..core.config import SchedulerConfig
from ..core.log import get_logger, log_context
from ..scheduler.models import OpResult
from .schemas import ApiResponse, CancelJobRequest, CreateJobRequest, RescheduleJobRequest

logger = get_logger("http")

_STATUS_BY_ERROR: dict[type[SchedulerError], int] = {
    JobNotFound: 404,
    InvalidScheduleSpec: 400,
    JobAlreadyExists: 409,
    CorrelationTimeout: 504,
    TransportUnavailable: 503,
    ServiceStopped: 503,
}


def status_for(result: OpResult) -> int:
    if result.success:
        return 200
    return _STATUS_BY_ERROR.get(type(result.error), 500)


def _respond(result: OpResult) -> JSONResponse:
    body = ApiResponse(success=result.success, message=result.message, job_id=result.job_id, data=result.data)
    return JSONResponse(status_code=status_for(result), content=body.dump())


def _coordinator(request: Request) -> DistributedCoordinator:
    return request.app.state.coordinator


def build_router() -> APIRouter:
    router = APIRouter()

    @router.post("/create", summary="Schedule a job on this instance")
    async def create_job(body: CreateJobRequest, request: Request) -> JSONResponse:
        return _respond(_coordinator(request).schedule_job(body.to_details()))

    @router.post("/reschedule", summary="Replace the trigger of a job on any instance")
    async def reschedule_job(body: RescheduleJobRequest, request: Request) -> JSONResponse:
        result = await _coordinator(request).reschedule_job(
            body.job_id,
            body.job_group,
            new_schedule_time=body.new_schedule_time,
            new_cron_expression=body.new_cron_expression,
        )
        return _respond(result)

    @router.post("/cancel", summary="Cancel a job on any instance")
    async def cancel_job(body: CancelJobRequest, request: Request) -> JSONResponse:
        return _respond(await _coordinator(request).cancel_job(body.job_id, body.job_group))

    @router.get("/jobs", summary="Jobs owned by this instance")
    async def list_jobs(request: Request) -> JSONResponse:
        jobs = [f"{job_id} ({job_group})" for job_id, job_group in _coordinator(request).list_jobs()]
        return _respond(OpResult.ok("Jobs retrieved successfully", data=jobs))

    @router.get("/status/{job_id}", summary="Status of a job as seen by this instance")
    async def job_status(job_id: str, request: Request) -> JSONResponse:
        status = _coordinator(request).status(job_id)
        return _respond(OpResult.ok("Job status retrieved successfully", job_id=job_id, data=status.value))

    @router.get("/health", summary="Instance health")
    async def health(request: Request) -> JSONResponse:
        return _respond(OpResult.ok("healthy", data=_coordinator(request).health()))

    return router


def create_app(
    cfg: SchedulerConfig | None = None,
    *,
    coordinator: DistributedCoordinator | None = None,
) -> FastAPI:
    if coordinator is None:
        coordinator = DistributedCoordinator(cfg=cfg or SchedulerConfig.load())
    cfg = coordinator.cfg

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("http.startup", event="http.startup", instance_id=cfg.instance_id, context_path=cfg.context_path)
        await coordinator.start()
        try:
            yield
        finally:
            logger.info("http.shutdown", event="http.shutdown")
            await coordinator.stop()

    app = FastAPI(title="distsched", version=__version__, lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        started = time.perf_counter()
        with log_context(request_id=request_id):
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.debug(
                "http.request",
                event="http.request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                process_time_ms=elapsed_ms,
            )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
        logger.warning("http.validation.failed", event="http.validation", path=request.url.path, errors=errors)
        body = ApiResponse(success=False, message="Request validation failed", data=errors)
        return JSONResponse(status_code=400, content=body.dump())

    @app.exception_handler(SchedulerError)
    async def scheduler_error_handler(request: Request, exc: SchedulerError):
        result = OpResult.fail(str(exc), exc)
        return _respond(result)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "http.unhandled",
            event="http.unhandled",
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    app.include_router(build_router(), prefix=cfg.context_path)
    return app
