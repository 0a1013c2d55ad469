from __future__ import annotations

from contextlib import contextmanager
import errno
import fcntl
import logging
import os
from pathlib import Path
import re
from typing import Iterator

from clusterlease.cancel import CancelToken

logger = logging.getLogger(__name__)

_LOCK_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class _AlreadyLocked(Exception):
    pass


def _try_lock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        if err.errno == errno.EWOULDBLOCK:
            raise _AlreadyLocked()
        raise


@contextmanager
def named_lock(
    name: str,
    *,
    lock_dir: Path,
    cancel: CancelToken | None = None,
    poll_interval: float = 1.0,
) -> Iterator[Path]:
    """Hold a one-slot, cross-process lock named `name` for the duration of the block."""
    if not _LOCK_NAME_RE.fullmatch(name):
        raise ValueError(f"Invalid lock name {name!r}")
    lock_dir = Path(lock_dir)
    lock_dir.mkdir(parents=True, exist_ok=True)
    path = lock_dir / f"{name}.lock"
    token = cancel or CancelToken()

    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        waiting_logged = False
        while True:
            try:
                _try_lock(fd)
                break
            except _AlreadyLocked:
                if not waiting_logged:
                    logger.info("Waiting for lock '%s' (%s)", name, path)
                    waiting_logged = True
                token.sleep(poll_interval)
        logger.info("Acquired lock '%s'", name)
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.info("Released lock '%s'", name)
    finally:
        os.close(fd)
