"""Admission control for submitted jobs.

Validation is a pure function of the submitted body and the image allow-list.
Rules run in a fixed order and the first failing rule decides the rejection.
Only accepted jobs reach the ledger.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from pydantic import ValidationError

from worker_agent.errors import DuplicateJobId
from worker_agent.models import (
    PROTOCOL_VERSION,
    ErrorCode,
    JobError,
    JobRecord,
    RuntimeSpec,
    SubmitResponse,
)
from worker_agent.settings import Settings
from worker_agent.storage import JobLedger


@dataclass(frozen=True)
class Rejection:
    code: ErrorCode
    message: str


@dataclass(frozen=True)
class Admission:
    job_id: str | None
    record: JobRecord | None = None
    rejection: Rejection | None = None

    @property
    def accepted(self) -> bool:
        return self.record is not None

    def to_response(self) -> SubmitResponse:
        if self.record is not None:
            return SubmitResponse(
                accepted=True, job_id=self.record.job_id, state="queued"
            )
        assert self.rejection is not None
        return SubmitResponse(
            accepted=False,
            job_id=self.job_id,
            state="rejected",
            error=JobError(code=self.rejection.code, message=self.rejection.message),
        )


def image_allowed(image: str, allowed_images: Iterable[str]) -> bool:
    """Match ``image`` against exact references and ``name:*`` patterns."""
    for pattern in allowed_images:
        if pattern.endswith(":*"):
            if image.startswith(pattern[:-1]):
                return True
        elif image == pattern:
            return True
    return False


def _is_protocol_version(version: Any) -> bool:
    # JSON has one number type, so ``1.0`` is the same version as ``1``.
    if isinstance(version, bool) or not isinstance(version, (int, float)):
        return False
    return version == PROTOCOL_VERSION


def validate_job(
    body: Any, allowed_images: Iterable[str] = ()
) -> Rejection | RuntimeSpec:
    """Validate a raw job body; return its typed runtime or a rejection."""
    if not isinstance(body, dict):
        return Rejection(ErrorCode.invalid_body, "Request body must be a JSON object")

    version = body.get("protocol_version")
    if not _is_protocol_version(version):
        return Rejection(
            ErrorCode.unsupported_protocol_version,
            f"Unsupported protocol_version: {version!r}. "
            f"Only version {PROTOCOL_VERSION} is supported.",
        )

    job_id = body.get("job_id")
    if not isinstance(job_id, str) or not job_id:
        return Rejection(ErrorCode.missing_job_id, "job_id must be a non-empty string")

    runtime = body.get("runtime")
    if not isinstance(runtime, dict):
        return Rejection(
            ErrorCode.missing_runtime, "runtime must be provided and must be an object"
        )

    mode = runtime.get("mode")
    if mode not in ("image", "build"):
        return Rejection(
            ErrorCode.bad_runtime_mode,
            f"runtime.mode must be 'image' or 'build', got {mode!r}",
        )
    if mode == "build":
        return Rejection(
            ErrorCode.runtime_not_supported,
            "runtime.mode='build' is not supported on this worker",
        )

    image = runtime.get("image")
    if not isinstance(image, str) or not image:
        return Rejection(
            ErrorCode.missing_image,
            "runtime.image must be a non-empty string when mode='image'",
        )

    allowed = list(allowed_images)
    if allowed and not image_allowed(image, allowed):
        return Rejection(
            ErrorCode.image_not_allowed,
            f"Image {image!r} is not allowed on this worker",
        )

    try:
        return RuntimeSpec.model_validate(runtime)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        return Rejection(ErrorCode.invalid_runtime, f"invalid runtime: {details}")


async def admit(ledger: JobLedger, body: Any, settings: Settings) -> Admission:
    """Validate ``body`` and, if it passes, insert a queued record."""
    job_id = body.get("job_id") if isinstance(body, dict) else None
    if not isinstance(job_id, str):
        job_id = None

    result = validate_job(body, settings.allowed_images)
    if isinstance(result, Rejection):
        return Admission(job_id=job_id, rejection=result)

    assert job_id is not None
    try:
        record = await ledger.create(job_id, result, body)
    except DuplicateJobId as exc:
        return Admission(
            job_id=job_id,
            rejection=Rejection(ErrorCode.job_id_already_exists, str(exc)),
        )
    return Admission(job_id=job_id, record=record)
