"""Worker configuration loading.

Settings come from three layers, highest precedence first:

1. Environment variables (``WORKER_ID``, ``MAX_CONCURRENT_JOBS``, ...)
2. A YAML file (``WORKER_CONFIG``, default ``config/worker.yaml``)
3. Defaults declared on :class:`~worker_agent.settings.Settings`

Keys in the YAML file may be written in snake_case or camelCase
(``max_concurrent_jobs`` or ``maxConcurrentJobs``).
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import fields
from pathlib import Path
from typing import Any, get_type_hints

import yaml

from worker_agent.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "worker.yaml"

# Settings field -> environment variable that overrides it.
ENV_KEYS = {
    "worker_id": "WORKER_ID",
    "host": "WORKER_HOST",
    "port": "WORKER_PORT",
    "max_concurrent_jobs": "MAX_CONCURRENT_JOBS",
    "allowed_images": "ALLOWED_IMAGES",
    "labels": "WORKER_LABELS",
    "scheduler_interval": "SCHEDULER_INTERVAL",
    "default_max_runtime_seconds": "DEFAULT_MAX_RUNTIME_SECONDS",
    "container_runtime": "CONTAINER_RUNTIME",
    "redis_url": "REDIS_URL",
    "use_fake_redis": "FAKE_REDIS",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def config_path() -> Path:
    return Path(os.getenv("WORKER_CONFIG", str(DEFAULT_CONFIG_PATH)))


def load_yaml_config(path: Path | None = None) -> dict[str, Any]:
    """Read the YAML config file, returning ``{}`` if it does not exist."""
    path = path or config_path()
    if not path.is_file():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return {_CAMEL.sub("_", str(key)).lower(): value for key, value in data.items()}


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _coerce(name: str, value: Any, hint: Any) -> Any:
    """Convert a YAML value to the type declared on the Settings field."""
    try:
        if hint is bool:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(value)
        if hint is int:
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(value)
            return int(value)
        if hint is float:
            if isinstance(value, bool):
                raise ValueError(value)
            return float(value)
        if hint == tuple[str, ...]:
            if isinstance(value, str):
                value = [item.strip() for item in value.split(",") if item.strip()]
            if not isinstance(value, (list, tuple)):
                raise ValueError(value)
            return tuple(str(item) for item in value)
        if value is None and hint != str:
            return None
        if isinstance(value, (dict, list)):
            raise ValueError(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"config key {name!r}: cannot use {value!r} as {getattr(hint, '__name__', hint)}"
        ) from exc


def load_settings(path: Path | None = None) -> Settings:
    raw = load_yaml_config(path)
    known = {f.name for f in fields(Settings)}
    hints = get_type_hints(Settings)
    for key in sorted(set(raw) - known):
        logger.warning("Ignoring unknown config key %r", key)

    overrides: dict[str, Any] = {}
    for name in known & set(raw):
        if os.getenv(ENV_KEYS[name]) is not None:
            continue
        overrides[name] = _coerce(name, raw[name], hints[name])
    return Settings(**overrides)
