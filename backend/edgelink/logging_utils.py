from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from tempfile import gettempdir
from typing import Any, Iterator

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "edgelink"
LOG_FILE_NAME = "edgelink.log.jsonl"


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    candidates = (
        Path(configured_out_dir) / "logs",
        Path(gettempdir()) / LOGGER_NAME / "logs",
    )
    for log_dir in candidates:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe = log_dir / ".writetest"
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
            return log_dir
        except OSError:
            continue
    return None


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
    )


def get_logger() -> logging.Logger:
    """Return the shared JSON logger, attaching handlers on first use."""
    logger = logging.getLogger(LOGGER_NAME)
    # Reloaders import this module more than once.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = _formatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            logger.warning("log_file_unavailable", extra={"event": "log_file_unavailable", "log_dir": str(log_dir)})
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


def _emit(level: int, event: str, fields: dict[str, Any]) -> None:
    get_logger().log(level, event, extra={"event": event, **fields})


def log_event(event: str, **fields: Any) -> None:
    _emit(logging.INFO, event, fields)


def log_warning(event: str, **fields: Any) -> None:
    _emit(logging.WARNING, event, fields)


@contextmanager
def timed_event(event: str, **fields: Any) -> Iterator[dict[str, Any]]:
    """Log ``event`` with ``duration_ms`` once the block finishes.

    The yielded dict can be filled in by the block; its keys are logged too.
    """
    extra: dict[str, Any] = {}
    t0 = time.perf_counter()
    try:
        yield extra
    finally:
        log_event(event, **{**fields, **extra, "duration_ms": round((time.perf_counter() - t0) * 1000, 2)})
