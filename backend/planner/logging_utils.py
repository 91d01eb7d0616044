from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from tempfile import gettempdir
from typing import Any, Iterator

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "route_planner"

# Fields bound for the current request; asyncio tasks spawned inside it inherit them.
_CONTEXT: ContextVar[dict[str, Any]] = ContextVar("route_planner_log_context", default={})


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _log_dir_candidates(configured_out_dir: str) -> tuple[Path, ...]:
    return (
        Path(configured_out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "route-planner" / "logs",
    )


def _writable_log_dir(configured_out_dir: str) -> Path | None:
    for log_dir in _log_dir_candidates(configured_out_dir):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "name": "logger"},
        timestamp=True,
    )


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = _formatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _writable_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / "planner.log.jsonl", encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach `fields` to every `log_event` emitted inside the block."""
    token = _CONTEXT.set({**_CONTEXT.get(), **fields})
    try:
        yield
    finally:
        _CONTEXT.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_CONTEXT.get())


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    # The event name doubles as the message and as a top-level key.
    extra = {**_CONTEXT.get(), **fields, "event": event}
    get_logger().log(level, event, extra=extra)
