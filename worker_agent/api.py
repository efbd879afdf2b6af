from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from worker_agent.admission import admit
from worker_agent.config import load_settings
from worker_agent.errors import JobNotFound, LiveLogsDisabled, register_error_handlers
from worker_agent.log_store import LogStore
from worker_agent.logging_utils import setup_logging
from worker_agent.models import (
    TERMINAL_STATES,
    CancelResponse,
    ErrorCode,
    JobRecord,
    JobState,
    JobSummary,
    JobView,
    SubmitResponse,
    WorkerHealth,
    WorkerInfo,
)
from worker_agent.redis_client import create_redis
from worker_agent.runner import SandboxExecutor
from worker_agent.scheduler import Scheduler
from worker_agent.settings import Settings
from worker_agent.storage import JobLedger
from worker_agent.system_metrics import build_health, build_info

logger = logging.getLogger(__name__)

API_DESCRIPTION = """
Worker Agent - run containerised jobs on this node.

## Job protocol (version 1)

Submit a job with `POST /jobs`:

```json
{
  "protocol_version": 1,
  "job_id": "render-0001",
  "task": {"anything": "the image understands"},
  "runtime": {
    "mode": "image",
    "image": "ghcr.io/example/renderer:1.2",
    "env": {"QUALITY": "high"},
    "limits": {"memory_mb": 512, "max_runtime_seconds": 60}
  }
}
```

The whole job document is written to the container's standard input as JSON.
Jobs are queued and started oldest first, at most `max_concurrent_jobs` at a
time. Poll `GET /jobs/{job_id}` for state, exit code and captured output.
"""


def create_app(
    settings: Settings | None = None,
    executor: SandboxExecutor | None = None,
    ledger: JobLedger | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(settings.log_level, Path(settings.log_file) if settings.log_file else None)

    ledger = ledger or JobLedger()
    executor = executor or SandboxExecutor(
        runtime=settings.container_runtime,
        default_timeout=settings.default_max_runtime_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log_store = None
        if settings.live_logs_enabled:
            log_store = LogStore(create_redis(settings))
        scheduler = Scheduler(
            ledger,
            executor,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            interval=settings.scheduler_interval,
            log_store=log_store,
        )
        app.state.log_store = log_store
        app.state.scheduler = scheduler
        scheduler.start()
        logger.info(
            "Worker %s ready (max_concurrent_jobs=%d)",
            settings.worker_id,
            settings.max_concurrent_jobs,
        )
        try:
            yield
        finally:
            await scheduler.stop()
            if log_store is not None:
                await log_store.redis.aclose()

    app = FastAPI(title="Worker Agent", version="0.1.0", description=API_DESCRIPTION, lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.executor = executor
    app.state.log_store = None
    app.state.scheduler = None
    register_error_handlers(app)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/info", response_model=WorkerInfo)
    async def info(request: Request) -> WorkerInfo:
        return build_info(request.app.state.settings)

    @app.get("/health", response_model=WorkerHealth)
    async def health(request: Request) -> WorkerHealth:
        counts = await request.app.state.ledger.counts()
        return build_health(
            running_jobs=counts[JobState.running],
            max_concurrent_jobs=request.app.state.settings.max_concurrent_jobs,
            queued_jobs=counts[JobState.queued],
        )

    @app.post(
        "/jobs",
        status_code=202,
        response_model=SubmitResponse,
        responses={400: {"model": SubmitResponse}, 409: {"model": SubmitResponse}},
    )
    async def submit_job(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None

        admission = await admit(request.app.state.ledger, body, request.app.state.settings)
        response = admission.to_response()
        if admission.accepted:
            logger.info("Accepted job %s", admission.job_id)
            return JSONResponse(
                status_code=202, content=response.model_dump(mode="json", exclude={"error"})
            )

        assert admission.rejection is not None
        logger.info(
            "Rejected job %s: %s", admission.job_id, admission.rejection.code.value
        )
        status = 409 if admission.rejection.code is ErrorCode.job_id_already_exists else 400
        return JSONResponse(status_code=status, content=response.model_dump(mode="json"))

    @app.get("/jobs", response_model=list[JobSummary])
    async def list_jobs(request: Request, state: JobState | None = None) -> list[JobSummary]:
        ledger: JobLedger = request.app.state.ledger
        if state is None:
            records = await ledger.all()
        else:
            records = await ledger.list_by_state(state)
        return [JobSummary.from_record(record) for record in records]

    @app.get("/jobs/{job_id}", response_model=JobView)
    async def get_job(job_id: str, request: Request) -> JobRecord:
        return await _require_job(request, job_id)

    @app.delete("/jobs/{job_id}", response_model=CancelResponse)
    async def cancel_job(job_id: str, request: Request) -> JSONResponse:
        ledger: JobLedger = request.app.state.ledger
        cancelled = await ledger.cancel_queued(job_id)
        if cancelled is not None:
            logger.info("Cancelled queued job %s", job_id)
            scheduler: Scheduler | None = request.app.state.scheduler
            if scheduler is not None:
                await scheduler.call_log_store("mark_complete", job_id)
            body = CancelResponse(
                job_id=job_id,
                state=cancelled.state,
                note="Job cancelled before start",
                error=cancelled.error,
            )
            return JSONResponse(status_code=200, content=body.model_dump(mode="json"))

        record = await _require_job(request, job_id)
        if record.state is JobState.running:
            body = CancelResponse(
                job_id=job_id,
                state=record.state,
                note="Cancellation for running jobs is not implemented",
            )
            return JSONResponse(status_code=202, content=body.model_dump(mode="json"))

        body = CancelResponse(
            job_id=job_id,
            state=record.state,
            note="Job already completed; nothing to cancel",
            error=record.error,
        )
        return JSONResponse(status_code=200, content=body.model_dump(mode="json"))

    @app.get("/jobs/{job_id}/logs")
    async def job_logs(job_id: str, request: Request) -> dict:
        log_store = _require_log_store(request)
        await _require_job(request, job_id)
        return {
            "job_id": job_id,
            "lines": await log_store.tail(job_id),
            "complete": await log_store.is_complete(job_id),
        }

    @app.get("/jobs/{job_id}/logs/stream")
    async def stream_job_logs(job_id: str, request: Request) -> StreamingResponse:
        log_store = _require_log_store(request)
        record = await _require_job(request, job_id)
        if record.state in TERMINAL_STATES:
            lines = await log_store.tail(job_id)
            return StreamingResponse(_iterate(lines), media_type="text/plain")
        return StreamingResponse(log_store.stream(job_id), media_type="text/plain")


async def _require_job(request: Request, job_id: str) -> JobRecord:
    record = await request.app.state.ledger.get(job_id)
    if record is None:
        raise JobNotFound(job_id)
    return record


def _require_log_store(request: Request) -> LogStore:
    log_store = request.app.state.log_store
    if log_store is None:
        raise LiveLogsDisabled("Live logs are not enabled on this worker")
    return log_store


async def _iterate(lines: list[str]) -> AsyncGenerator[str, None]:
    for line in lines:
        yield line


app = create_app()
