from __future__ import annotations

import logging
import threading

from clusterlease.errors import LeaseCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Abort signal shared by every blocking step of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            logger.warning("Cancellation requested: %s", reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise LeaseCancelled(f"Cancelled: {self._reason}")

    def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, raising LeaseCancelled as soon as cancellation is requested."""
        if seconds > 0:
            self._event.wait(seconds)
        self.raise_if_cancelled()
