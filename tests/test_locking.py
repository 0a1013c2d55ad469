from __future__ import annotations

import threading
import time

import pytest

from clusterlease.cancel import CancelToken
from clusterlease.errors import LeaseCancelled
from clusterlease.services.locking import named_lock


def test_named_lock_serializes_holders(tmp_path) -> None:
    events: list[str] = []
    first_holding = threading.Event()

    def _second() -> None:
        first_holding.wait()
        with named_lock("pipeline", lock_dir=tmp_path, poll_interval=0.05):
            events.append("second")

    thread = threading.Thread(target=_second)
    thread.start()
    with named_lock("pipeline", lock_dir=tmp_path, poll_interval=0.05) as path:
        first_holding.set()
        time.sleep(0.3)
        events.append("first")
    thread.join(timeout=5)

    assert events == ["first", "second"]
    assert path == tmp_path / "pipeline.lock"


def test_named_lock_wait_observes_cancel(tmp_path) -> None:
    cancel = CancelToken()
    with named_lock("pipeline", lock_dir=tmp_path):
        timer = threading.Timer(0.2, cancel.cancel)
        timer.start()
        with pytest.raises(LeaseCancelled):
            with named_lock("pipeline", lock_dir=tmp_path, cancel=cancel, poll_interval=0.05):
                pytest.fail("lock must not be acquired while held")
        timer.cancel()


def test_named_lock_rejects_path_like_names(tmp_path) -> None:
    with pytest.raises(ValueError):
        with named_lock("../etc/passwd", lock_dir=tmp_path):
            pass
