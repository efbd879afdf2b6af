from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, Awaitable, Callable

from worker_agent.models import ErrorCode, ExecutionResult, JobRecord, RuntimeSpec

logger = logging.getLogger(__name__)

# Same call shape as asyncio.create_subprocess_exec.
Launcher = Callable[..., Awaitable[asyncio.subprocess.Process]]
# Receives ("stdout" | "stderr", text) for every decoded chunk.
OutputCallback = Callable[[str, str], Awaitable[None]]

READ_CHUNK = 4096


def build_run_args(runtime: RuntimeSpec) -> list[str]:
    """Arguments for ``<container runtime> run`` (without the executable)."""
    args = ["run", "--rm", "-i"]

    limits = runtime.limits
    if limits.memory_mb:
        args += ["--memory", f"{limits.memory_mb}m"]
    if limits.cpus:
        args += ["--cpus", f"{limits.cpus:g}"]

    for key, value in runtime.env.items():
        if value is None:
            continue
        args += ["-e", f"{key}={_env_value(value)}"]

    args.append(str(runtime.image))
    # Without an override the image's entrypoint reads the job from stdin.
    if runtime.command:
        args.extend(runtime.command)
    return args


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class _StreamCapture:
    def __init__(self, name: str, on_output: OutputCallback | None) -> None:
        self.name = name
        self._on_output = on_output
        self._chunks: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def consume(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            data = await stream.read(READ_CHUNK)
            if not data:
                break
            await self._append(self._decoder.decode(data))
        await self._append(self._decoder.decode(b"", final=True))

    def note(self, text: str) -> None:
        self._chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    async def _append(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        if self._on_output is None:
            return
        try:
            await self._on_output(self.name, text)
        except Exception:
            logger.exception("output callback failed for %s", self.name)


class SandboxExecutor:
    """Runs one job inside a container and reports how it ended.

    The executor never decides whether a job succeeded. It reports the exit
    code of a normal exit, or a fault (``TIMEOUT`` / ``SANDBOX_ERROR``) when
    the process had to be killed or could not be run at all.
    """

    def __init__(
        self,
        runtime: str = "docker",
        default_timeout: float = 10.0,
        launcher: Launcher | None = None,
        drain_timeout: float = 2.0,
    ) -> None:
        self.runtime = runtime
        self.default_timeout = default_timeout
        self.drain_timeout = drain_timeout
        self._launch: Launcher = launcher or asyncio.create_subprocess_exec

    def command_for(self, runtime: RuntimeSpec) -> list[str]:
        return [self.runtime, *build_run_args(runtime)]

    async def run(
        self, record: JobRecord, on_output: OutputCallback | None = None
    ) -> ExecutionResult:
        job_id = record.job_id
        runtime = record.runtime
        if not runtime.image:
            return ExecutionResult(
                stderr="Missing or invalid runtime.image",
                fault=ErrorCode.sandbox_error,
            )

        timeout = float(runtime.limits.max_runtime_seconds or self.default_timeout)
        cmd = self.command_for(runtime)
        payload = json.dumps(record.job).encode()

        logger.debug("job %s: %s", job_id, " ".join(cmd))
        try:
            process = await self._launch(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("job %s: failed to start %s: %s", job_id, self.runtime, exc)
            return ExecutionResult(
                stderr=f"[runner] failed to start {self.runtime}: {exc}\n",
                fault=ErrorCode.sandbox_error,
            )

        stdout = _StreamCapture("stdout", on_output)
        stderr = _StreamCapture("stderr", on_output)
        readers = [
            asyncio.create_task(stdout.consume(process.stdout)),
            asyncio.create_task(stderr.consume(process.stderr)),
        ]

        fault: ErrorCode | None = None
        try:
            await asyncio.wait_for(self._communicate(process, payload), timeout=timeout)
        except asyncio.TimeoutError:
            fault = ErrorCode.timeout
            logger.info("job %s: timed out after %ss", job_id, timeout)
        except OSError as exc:
            fault = ErrorCode.sandbox_error
            logger.warning("job %s: sandbox I/O error: %s", job_id, exc)
            stderr.note(f"[runner] sandbox I/O error: {exc}\n")
        finally:
            await self._kill(process)
            await self._join(readers)

        if fault is ErrorCode.timeout:
            stderr.note("[runner] timeout exceeded, process terminated\n")
        if fault is not None:
            return ExecutionResult(stdout=stdout.text, stderr=stderr.text, fault=fault)
        return ExecutionResult(
            exit_code=process.returncode, stdout=stdout.text, stderr=stderr.text
        )

    @staticmethod
    async def _communicate(process: asyncio.subprocess.Process, payload: bytes) -> None:
        if process.stdin is not None:
            try:
                process.stdin.write(payload)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # The sandbox exited or closed stdin without reading the job.
                pass
            finally:
                process.stdin.close()
        await process.wait()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    async def _join(self, readers: list[asyncio.Task]) -> None:
        _, pending = await asyncio.wait(readers, timeout=self.drain_timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
