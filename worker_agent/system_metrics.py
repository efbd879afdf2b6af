"""Static and dynamic host information for ``/info`` and ``/health``."""
from __future__ import annotations

import os
import socket
import time

from worker_agent.models import WorkerHealth, WorkerInfo
from worker_agent.settings import Settings

_STARTED = time.monotonic()


def total_memory_mb() -> int | None:
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return None
    return round(pages * page_size / (1024 * 1024))


def load_average() -> list[float]:
    try:
        return [round(value, 2) for value in os.getloadavg()]
    except (AttributeError, OSError):
        return []


def uptime_seconds() -> int:
    return round(time.monotonic() - _STARTED)


def build_info(settings: Settings) -> WorkerInfo:
    threads = os.cpu_count() or 1
    return WorkerInfo(
        worker_id=settings.worker_id,
        hostname=socket.gethostname(),
        # Physical cores are not exposed by the stdlib; report threads.
        cpu_cores=threads,
        cpu_threads=threads,
        memory_mb=total_memory_mb(),
        labels=list(settings.labels),
    )


def build_health(
    running_jobs: int, max_concurrent_jobs: int, queued_jobs: int = 0
) -> WorkerHealth:
    return WorkerHealth(
        uptime_seconds=uptime_seconds(),
        load_average=load_average(),
        running_jobs=running_jobs,
        queued_jobs=queued_jobs,
        max_concurrent_jobs=max_concurrent_jobs,
    )
