from __future__ import annotations

import logging
import os
from pathlib import Path
import sys

_DEFAULT_LOG_LEVEL = "INFO"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_RESET = "\x1b[0m"
_LEVEL_COLORS = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}


class _ColorFormatter(logging.Formatter):
    def __init__(self, *, use_color: bool) -> None:
        super().__init__(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        if self._use_color:
            color = _LEVEL_COLORS.get(original, "")
            record.levelname = f"{color}{original}{_RESET}" if color else original
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _should_use_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    return sys.stderr.isatty()


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    candidate = (level or os.getenv("CLUSTERLEASE_LOG_LEVEL", _DEFAULT_LOG_LEVEL)).upper()
    resolved = logging.getLevelName(candidate)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def _resolve_log_file(log_file: Path | str | None) -> Path | None:
    candidate = log_file or os.getenv("CLUSTERLEASE_LOG_FILE")
    return Path(candidate) if candidate else None


def configure_logging(
    *,
    level: str | int | None = None,
    log_file: Path | str | None = None,
    force: bool = False,
) -> None:
    """Send log records to stderr and, when configured, to a plain-text log file.

    Calling again without `force` only adjusts levels on existing handlers.
    """
    root = logging.getLogger()
    resolved_level = _resolve_level(level)
    root.setLevel(resolved_level)

    if root.handlers and not force:
        for handler in root.handlers:
            handler.setLevel(resolved_level)
        return

    handlers: list[logging.Handler] = []
    stream = logging.StreamHandler()
    stream.setFormatter(_ColorFormatter(use_color=_should_use_color()))
    handlers.append(stream)

    path = _resolve_log_file(log_file)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(_ColorFormatter(use_color=False))
        handlers.append(file_handler)

    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    for handler in handlers:
        handler.setLevel(resolved_level)
        root.addHandler(handler)
