from __future__ import annotations

import shlex
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROTOCOL_VERSION = 1


class JobState(str, Enum):
    queued = "queued"
    running = "running"
    finished = "finished"
    failed = "failed"


TERMINAL_STATES = frozenset({JobState.finished, JobState.failed})


class ErrorCode(str, Enum):
    # admission
    invalid_body = "INVALID_BODY"
    unsupported_protocol_version = "UNSUPPORTED_PROTOCOL_VERSION"
    missing_job_id = "MISSING_JOB_ID"
    missing_runtime = "MISSING_RUNTIME"
    bad_runtime_mode = "BAD_RUNTIME_MODE"
    runtime_not_supported = "RUNTIME_NOT_SUPPORTED"
    missing_image = "MISSING_IMAGE"
    image_not_allowed = "IMAGE_NOT_ALLOWED"
    invalid_runtime = "INVALID_RUNTIME"
    job_id_already_exists = "JOB_ID_ALREADY_EXISTS"
    # execution
    timeout = "TIMEOUT"
    sandbox_error = "SANDBOX_ERROR"
    non_zero_exit = "NON_ZERO_EXIT"
    cancelled = "CANCELLED"


class Limits(BaseModel):
    memory_mb: int | None = None
    max_runtime_seconds: float | None = None
    cpus: float | None = None

    @field_validator("memory_mb", "max_runtime_seconds", "cpus", mode="before")
    @classmethod
    def _non_positive_as_unset(cls, value: Any) -> Any:
        # Zero or negative means "no limit": the worker default applies.
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value <= 0:
            return None
        return value


class RuntimeSpec(BaseModel):
    """Typed view of the ``runtime`` envelope of a job specification."""

    model_config = ConfigDict(extra="allow")

    mode: Literal["image", "build"]
    image: str | None = None
    command: list[str] | None = None
    env: dict[str, Any] = Field(default_factory=dict)
    limits: Limits = Field(default_factory=Limits)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("env", "limits", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class JobError(BaseModel):
    code: ErrorCode
    message: str


class JobRecord(BaseModel):
    job_id: str
    state: JobState
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: JobError | None = None
    runtime: RuntimeSpec
    # Original submission, passed to the sandbox verbatim.
    job: dict[str, Any]


class ExecutionResult(BaseModel):
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    fault: ErrorCode | None = None


class SubmitResponse(BaseModel):
    accepted: bool
    job_id: str | None = None
    state: Literal["queued", "rejected"]
    error: JobError | None = None


class JobView(BaseModel):
    job_id: str
    state: JobState
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: JobError | None = None


_SUMMARY_FIELDS = {"job_id", "state", "created_at", "started_at", "finished_at", "exit_code"}


class JobSummary(BaseModel):
    job_id: str
    state: JobState
    image: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobSummary":
        return cls(image=record.runtime.image, **record.model_dump(include=_SUMMARY_FIELDS))


class CancelResponse(BaseModel):
    job_id: str
    state: JobState
    note: str
    error: JobError | None = None


class WorkerInfo(BaseModel):
    worker_id: str
    hostname: str
    protocol_version: int = PROTOCOL_VERSION
    cpu_cores: int
    cpu_threads: int
    memory_mb: int | None = None
    labels: list[str] = Field(default_factory=list)


class WorkerHealth(BaseModel):
    status: Literal["ok"] = "ok"
    uptime_seconds: int
    load_average: list[float] = Field(default_factory=list)
    running_jobs: int
    queued_jobs: int = 0
    max_concurrent_jobs: int
    temperature_c: float | None = None
