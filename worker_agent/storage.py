from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from worker_agent.errors import DuplicateJobId
from worker_agent.models import ErrorCode, JobError, JobRecord, JobState, RuntimeSpec


class JobLedger:
    """In-memory job ledger.

    Owns every job record on this worker. Records are immutable snapshots:
    each update stores a new copy, so a record handed to a reader never
    changes underneath it. Records are kept for the process lifetime and
    dicts preserve insertion order, which gives FIFO order among queued jobs.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def create(
        self, job_id: str, runtime: RuntimeSpec, job: dict[str, Any]
    ) -> JobRecord:
        record = JobRecord(
            job_id=job_id,
            state=JobState.queued,
            created_at=self._now(),
            runtime=runtime,
            job=job,
        )
        async with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobId(job_id)
            self._jobs[job_id] = record
        return record

    async def get(self, job_id: str) -> JobRecord | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def all(self) -> list[JobRecord]:
        async with self._lock:
            return list(self._jobs.values())

    async def list_by_state(self, state: JobState) -> list[JobRecord]:
        async with self._lock:
            return [r for r in self._jobs.values() if r.state == state]

    async def running_count(self) -> int:
        return len(await self.list_by_state(JobState.running))

    async def counts(self) -> dict[JobState, int]:
        async with self._lock:
            counter = Counter(r.state for r in self._jobs.values())
        return {state: counter.get(state, 0) for state in JobState}

    async def update(
        self, job_id: str, *, expect_state: JobState | None = None, **fields: Any
    ) -> JobRecord | None:
        """Merge ``fields`` into the record for ``job_id``.

        Returns ``None`` when the record is absent, or when ``expect_state`` is
        given and the record is no longer in that state.
        """
        async with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            if expect_state is not None and record.state != expect_state:
                return None
            record = record.model_copy(update=fields)
            self._jobs[job_id] = record
            return record

    async def mark_running(self, job_id: str) -> JobRecord | None:
        return await self.update(
            job_id,
            expect_state=JobState.queued,
            state=JobState.running,
            started_at=self._now(),
        )

    async def mark_finished(
        self,
        job_id: str,
        state: JobState,
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
        error: JobError | None = None,
    ) -> JobRecord | None:
        return await self.update(
            job_id,
            state=state,
            finished_at=self._now(),
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            error=error,
        )

    async def cancel_queued(self, job_id: str) -> JobRecord | None:
        """Fail a job that has not been dispatched yet.

        Returns ``None`` if the job is absent or already left ``queued``.
        """
        return await self.update(
            job_id,
            expect_state=JobState.queued,
            state=JobState.failed,
            finished_at=self._now(),
            error=JobError(
                code=ErrorCode.cancelled,
                message="Job was cancelled before it started running",
            ),
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)
