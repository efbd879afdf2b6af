"""Domain exceptions and their HTTP mapping."""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class WorkerAgentError(Exception):
    """Base class for errors raised by the worker agent."""


class DuplicateJobId(WorkerAgentError):
    """A job with this identifier is already known to this worker."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job with id {job_id} already exists")
        self.job_id = job_id


class JobNotFound(WorkerAgentError):
    """Requested job ID does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class LiveLogsDisabled(WorkerAgentError):
    """Live output streaming is not configured on this worker."""


async def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404, content={"job_id": exc.job_id, "state": "not_found"}
    )


async def _live_logs_disabled(request: Request, exc: LiveLogsDisabled) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(JobNotFound, _job_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(LiveLogsDisabled, _live_logs_disabled)  # type: ignore[arg-type]
