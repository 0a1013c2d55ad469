from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from clusterlease.cancel import CancelToken
    from clusterlease.models import ProvisionHandle

FailureKind = Literal["cancelled", "failed"]


class ClusterLeaseException(Exception):
    pass


class ConfigException(ClusterLeaseException):
    pass


class LeaseCancelled(ClusterLeaseException):
    def __init__(self, message: str = "Cancelled") -> None:
        super().__init__(message)


class ProvisioningFailed(ClusterLeaseException):
    def __init__(
        self,
        *,
        attempts: int,
        last_error: BaseException | None,
        orphaned: ProvisionHandle | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        # Set when a failed attempt could not be destroyed and still needs cleanup.
        self.orphaned = orphaned
        message = f"Provisioning failed after {attempts} attempt(s): {last_error}"
        if orphaned is not None:
            message += f"; cluster {orphaned.name} could not be destroyed (info file: {orphaned.info_path})"
        super().__init__(message)


class TaskFailed(ClusterLeaseException):
    def __init__(self, *, error: BaseException, handle: ProvisionHandle | None = None) -> None:
        self.error = error
        # Set only when the cluster was deliberately left running.
        self.handle = handle
        super().__init__(f"Task failed: {error}")


def classify_failure(exc: BaseException, *, cancel: CancelToken | None = None) -> FailureKind:
    """Decide whether an exception ends a lease as cancelled or as an ordinary failure.

    Cancellation is checked first: a set token wins over whatever error the
    interrupted step happened to raise.
    """
    if cancel is not None and cancel.is_cancelled:
        return "cancelled"
    if isinstance(exc, (LeaseCancelled, KeyboardInterrupt)):
        return "cancelled"
    return "failed"
