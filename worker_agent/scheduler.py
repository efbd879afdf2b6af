"""Periodic dispatch of queued jobs under a concurrency ceiling.

Every ``interval`` seconds the scheduler counts running jobs, takes as many
queued jobs as there are free slots (oldest first), moves each to
``running`` and hands it to the executor in its own task. The tick itself
never waits for a job to finish.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone

from worker_agent.log_store import LogStore
from worker_agent.models import ErrorCode, ExecutionResult, JobError, JobRecord, JobState
from worker_agent.runner import OutputCallback, SandboxExecutor
from worker_agent.storage import JobLedger

logger = logging.getLogger(__name__)


def classify_result(
    result: ExecutionResult, timeout: float | None = None
) -> tuple[JobState, JobError | None]:
    if result.fault is ErrorCode.timeout:
        return JobState.failed, JobError(
            code=ErrorCode.timeout,
            message=f"Job exceeded max_runtime_seconds ({timeout:g}s)"
            if timeout
            else "Job exceeded max_runtime_seconds",
        )
    if result.fault is ErrorCode.sandbox_error:
        return JobState.failed, JobError(
            code=ErrorCode.sandbox_error,
            message="Container runtime failed to run the job",
        )
    if result.exit_code != 0:
        return JobState.failed, JobError(
            code=ErrorCode.non_zero_exit,
            message=f"Job exited with code {result.exit_code}",
        )
    return JobState.finished, None


class Scheduler:
    def __init__(
        self,
        ledger: JobLedger,
        executor: SandboxExecutor,
        max_concurrent_jobs: int = 2,
        interval: float = 0.5,
        log_store: LogStore | None = None,
        log_timeout: float = 2.0,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.max_concurrent_jobs = max_concurrent_jobs
        self.interval = interval
        self.log_store = log_store
        # Upper bound on each live log store call.
        self.log_timeout = log_timeout
        self._loop_task: asyncio.Task | None = None
        self._tick_in_progress = False
        self._job_tasks: set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._job_tasks)

    def start(self) -> None:
        if self.started:
            return
        self._loop_task = asyncio.create_task(self._run_forever(), name="scheduler")
        logger.info(
            "Started with interval=%ss, max_concurrent_jobs=%d",
            self.interval,
            self.max_concurrent_jobs,
        )

    async def stop(self, cancel_jobs: bool = True) -> None:
        """Stop ticking. In-flight jobs are cancelled or awaited."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
            logger.info("Stopped")
        if cancel_jobs:
            for task in self._job_tasks:
                task.cancel()
        await self.drain()

    async def drain(self) -> None:
        """Wait until every dispatched job task has completed."""
        while self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.interval)

    async def tick(self) -> list[str]:
        """Run one scheduling pass and return the IDs dispatched by it."""
        if self._tick_in_progress:
            return []
        self._tick_in_progress = True
        try:
            running = await self.ledger.running_count()
            available = self.max_concurrent_jobs - running
            if available <= 0:
                return []

            queued = await self.ledger.list_by_state(JobState.queued)
            dispatched: list[str] = []
            for record in queued[:available]:
                if await self._dispatch(record):
                    dispatched.append(record.job_id)
            return dispatched
        finally:
            self._tick_in_progress = False

    async def _dispatch(self, record: JobRecord) -> bool:
        # The transition happens inside the tick so the next tick counts this
        # job as running even if its task has not been scheduled yet.
        running = await self.ledger.mark_running(record.job_id)
        if running is None:
            logger.warning(
                "Job %s no longer queued or no longer exists; not starting it",
                record.job_id,
            )
            return False

        logger.info(
            "Starting job %s with image=%s", running.job_id, running.runtime.image
        )
        task = asyncio.create_task(self._run_job(running), name=f"job:{running.job_id}")
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)
        return True

    async def _run_job(self, record: JobRecord) -> None:
        job_id = record.job_id
        await self.call_log_store("register", job_id)
        try:
            result = await self.executor.run(record, on_output=self._output_sink(job_id))
            timeout = record.runtime.limits.max_runtime_seconds or self.executor.default_timeout
            state, error = classify_result(result, timeout)

            updated = await self.ledger.mark_finished(
                job_id,
                state,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                error=error,
            )
            if updated is None:
                logger.warning(
                    "Job %s disappeared before completion could be recorded", job_id
                )
                return

            logger.info(
                "Job %s completed with state=%s, exit_code=%s, error=%s",
                job_id,
                updated.state.value,
                updated.exit_code,
                error.code.value if error else None,
            )
        except Exception as exc:
            logger.exception("Unexpected error while running job %s", job_id)
            await self.ledger.update(
                job_id,
                expect_state=JobState.running,
                state=JobState.failed,
                finished_at=datetime.now(timezone.utc),
                error=JobError(
                    code=ErrorCode.sandbox_error,
                    message=f"Internal error while running job: {exc}",
                ),
            )
        finally:
            await self.call_log_store("mark_complete", job_id)

    def _output_sink(self, job_id: str) -> OutputCallback | None:
        if self.log_store is None:
            return None
        log_store = self.log_store
        publishing = True

        async def sink(stream: str, text: str) -> None:
            nonlocal publishing
            if not publishing:
                return
            try:
                await asyncio.wait_for(log_store.append(job_id, text), self.log_timeout)
            except Exception:
                # The job keeps running; only its live view stops.
                publishing = False
                logger.warning(
                    "Live log store append failed for job %s; no further output "
                    "will be published",
                    job_id,
                    exc_info=True,
                )

        return sink

    async def call_log_store(self, method: str, job_id: str) -> None:
        if self.log_store is None:
            return
        try:
            await asyncio.wait_for(getattr(self.log_store, method)(job_id), self.log_timeout)
        except Exception:
            logger.exception("Live log store %s failed for job %s", method, job_id)
