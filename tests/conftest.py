import asyncio
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from worker_agent.models import JobRecord, JobState, RuntimeSpec  # noqa: E402
from worker_agent.runner import SandboxExecutor  # noqa: E402
from worker_agent.settings import Settings  # noqa: E402
from worker_agent.storage import JobLedger  # noqa: E402

# Image reference -> Python program standing in for the container.
IMAGES = {
    "test/echo:1": (
        "import json, sys\n"
        "job = json.load(sys.stdin)\n"
        "print('hello from', job['job_id'])\n"
        "print(json.dumps(job.get('task'), sort_keys=True))\n"
    ),
    "test/env:1": (
        "import os\n"
        "print('GREETING=' + os.environ.get('GREETING', '<unset>'))\n"
    ),
    "test/fail:1": (
        "import sys\n"
        "sys.stdin.read()\n"
        "print('before error', flush=True)\n"
        "print('boom', file=sys.stderr)\n"
        "sys.exit(3)\n"
    ),
    "test/sleep:1": (
        "import time\n"
        "print('starting', flush=True)\n"
        "time.sleep(30)\n"
    ),
    "test/short:1": (
        "import time\n"
        "time.sleep(0.3)\n"
        "print('done')\n"
    ),
}


class FakeContainerRuntime:
    """Launcher that reads `docker run` arguments and runs a local script.

    ``-e`` flags become the child's environment and the image reference picks
    the script. Unknown images fail to launch like a missing executable.
    """

    def __init__(self, images=None):
        self.images = dict(IMAGES if images is None else images)
        self.calls = []

    async def __call__(self, *cmd, **kwargs):
        self.calls.append(list(cmd))
        env = dict(os.environ)
        image = None
        args = list(cmd[1:])
        i = 0
        while i < len(args):
            arg = args[i]
            if arg in ("run", "--rm", "-i"):
                i += 1
            elif arg in ("--memory", "--cpus"):
                i += 2
            elif arg == "-e":
                key, _, value = args[i + 1].partition("=")
                env[key] = value
                i += 2
            else:
                image = arg
                break
        if image not in self.images:
            raise FileNotFoundError(f"no such image: {image}")
        return await asyncio.create_subprocess_exec(
            sys.executable, "-c", self.images[image], env=env, **kwargs
        )


def job_body(job_id, image="test/echo:1", **runtime):
    body = {
        "protocol_version": 1,
        "job_id": job_id,
        "task": {"kind": "demo", "n": 1},
        "runtime": {"mode": "image", "image": image},
    }
    body["runtime"].update(runtime)
    return body


def make_record(job_id="job-1", image="test/echo:1", **runtime):
    body = job_body(job_id, image, **runtime)
    return JobRecord(
        job_id=job_id,
        state=JobState.running,
        created_at="2026-01-01T00:00:00Z",
        runtime=RuntimeSpec.model_validate(body["runtime"]),
        job=body,
    )


@pytest.fixture
def fake_runtime():
    return FakeContainerRuntime()


@pytest.fixture
def executor(fake_runtime):
    return SandboxExecutor(runtime="docker", default_timeout=5, launcher=fake_runtime)


@pytest.fixture
def ledger():
    return JobLedger()


@pytest.fixture
def settings():
    return Settings(
        worker_id="worker-test",
        max_concurrent_jobs=2,
        scheduler_interval=0.05,
        default_max_runtime_seconds=5,
        allowed_images=(),
        labels=("test",),
        redis_url="",
        use_fake_redis=False,
        log_level="INFO",
        log_file=None,
    )
