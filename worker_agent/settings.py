from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    worker_id: str = field(
        default_factory=lambda: os.getenv("WORKER_ID", "worker-unnamed")
    )
    host: str = field(default_factory=lambda: os.getenv("WORKER_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("WORKER_PORT", "9000")))
    max_concurrent_jobs: int = field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_JOBS", "2"))
    )
    # Exact image references or "name:*" patterns; empty allows any image.
    allowed_images: tuple[str, ...] = field(
        default_factory=lambda: _env_list("ALLOWED_IMAGES")
    )
    labels: tuple[str, ...] = field(default_factory=lambda: _env_list("WORKER_LABELS"))
    scheduler_interval: float = field(
        default_factory=lambda: float(os.getenv("SCHEDULER_INTERVAL", "0.5"))
    )
    default_max_runtime_seconds: float = field(
        default_factory=lambda: float(os.getenv("DEFAULT_MAX_RUNTIME_SECONDS", "10"))
    )
    container_runtime: str = field(
        default_factory=lambda: os.getenv("CONTAINER_RUNTIME", "docker")
    )
    redis_url: str = field(default_factory=lambda: os.getenv("REDIS_URL", ""))
    use_fake_redis: bool = field(default_factory=lambda: _env_flag("FAKE_REDIS"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_file: str | None = field(default_factory=lambda: os.getenv("LOG_FILE"))

    @property
    def live_logs_enabled(self) -> bool:
        return bool(self.redis_url) or self.use_fake_redis


def get_settings() -> Settings:
    return Settings()
