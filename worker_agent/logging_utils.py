"""Logging setup for the worker agent.

Modules log through ``logging.getLogger(__name__)``, so every logger lives
under the ``worker_agent.`` namespace and inherits the handlers configured
here. ``setup_logging`` is called once from the application factory; later
calls are ignored so tests and reloads do not stack duplicate handlers.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

_CONFIGURED = False


def setup_logging(
    level: str = "INFO", log_file: Path | None = None, verbose: bool = False
) -> None:
    """Configure the root logger once.

    :param level: level name, case-insensitive.
    :param log_file: optional file to log to in addition to stdout.
    :param verbose: include ``name:lineno`` in every line.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    if verbose:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _CONFIGURED = True
