from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, TypeVar

from clusterlease.cancel import CancelToken
from clusterlease.errors import LeaseCancelled, ProvisioningFailed, TaskFailed, classify_failure
from clusterlease.models import ClusterInfo, ProvisionHandle, ProvisionRequest
from clusterlease.proc import AdapterCommandError
from clusterlease.provisioner import Provisioner

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class LeasePolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    keep_on_task_failure: bool = True
    retry_delay_sec: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.retry_delay_sec < 0:
            raise ValueError("retry_delay_sec must be >= 0")


class LeaseManager:
    """Acquire, use and release ephemeral clusters through a provisioner."""

    def __init__(
        self,
        *,
        provisioner: Provisioner,
        cancel: CancelToken | None = None,
        policy: LeasePolicy | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._cancel = cancel or CancelToken()
        self._policy = policy or LeasePolicy()
        self.last_attempts = 0

    @property
    def policy(self) -> LeasePolicy:
        return self._policy

    def acquire(self, request: ProvisionRequest, max_attempts: int | None = None) -> ProvisionHandle:
        """Create a cluster and block until it is ready, retrying failed attempts.

        Every failed attempt is destroyed before the next one starts. A
        cancellation destroys the partial cluster and is never retried.
        """
        budget = self._policy.max_attempts if max_attempts is None else max_attempts
        if budget < 1:
            raise ValueError("max_attempts must be >= 1")

        last_error: BaseException | None = None
        for attempt in range(1, budget + 1):
            self.last_attempts = attempt
            self._cancel.raise_if_cancelled()
            self._provisioner.discard(request)
            logger.info("Provisioning '%s': attempt %s/%s", request.name, attempt, budget)
            handle: ProvisionHandle | None = None
            try:
                handle = self._provisioner.create(request)
                self._cancel.raise_if_cancelled()
                self._provisioner.wait(handle)
                self._cancel.raise_if_cancelled()
            except (Exception, KeyboardInterrupt) as exc:
                partial = handle if handle is not None else self._provisioner.handle_for(request)
                if classify_failure(exc, cancel=self._cancel) == "cancelled":
                    logger.warning("Provisioning '%s' cancelled during attempt %s", request.name, attempt)
                    self.release(partial)
                    raise LeaseCancelled(f"Provisioning of {request.name} cancelled") from exc
                last_error = exc
                logger.warning(
                    "Provisioning '%s' attempt %s/%s failed%s: %s",
                    request.name,
                    attempt,
                    budget,
                    _category_suffix(exc),
                    exc,
                )
                if not self.release(partial):
                    # Discarding before the next attempt would drop the only record of this cluster.
                    logger.error(
                        "Stopping retries for '%s': attempt %s left cluster behind at %s",
                        request.name,
                        attempt,
                        partial.info_path,
                    )
                    raise ProvisioningFailed(attempts=attempt, last_error=exc, orphaned=partial) from exc
                if attempt < budget and self._policy.retry_delay_sec:
                    try:
                        self._cancel.sleep(self._policy.retry_delay_sec)
                    except LeaseCancelled:
                        raise LeaseCancelled(f"Provisioning of {request.name} cancelled") from exc
                continue
            logger.info("Cluster '%s' ready after %s attempt(s)", request.name, attempt)
            return handle

        logger.error("Giving up on '%s' after %s attempt(s)", request.name, budget)
        raise ProvisioningFailed(attempts=budget, last_error=last_error) from last_error

    def release(self, handle: ProvisionHandle) -> bool:
        """Destroy a cluster. Errors are logged and swallowed; returns False if the destroy failed."""
        try:
            self._provisioner.destroy(handle)
        except Exception:
            logger.exception("Failed to destroy cluster '%s'; it may need manual cleanup", handle.name)
            return False
        return True

    def with_resource(
        self,
        request: ProvisionRequest,
        task: Callable[[ClusterInfo], T],
        max_attempts: int | None = None,
    ) -> T:
        """Run `task` against a freshly acquired cluster and release it afterwards.

        When the task fails for a reason other than cancellation and the policy
        keeps failed clusters, the cluster is left running for inspection and
        TaskFailed carries its handle.
        """
        handle = self.acquire(request, max_attempts=max_attempts)
        try:
            info = self._provisioner.describe(handle)
            self._cancel.raise_if_cancelled()
            result = task(info)
            self._cancel.raise_if_cancelled()
        except (Exception, KeyboardInterrupt) as exc:
            if classify_failure(exc, cancel=self._cancel) == "cancelled":
                logger.warning("Task on cluster '%s' cancelled; destroying it", handle.name)
                self.release(handle)
                raise LeaseCancelled(f"Task on {handle.name} cancelled") from exc
            if self._policy.keep_on_task_failure:
                logger.warning(
                    "Task on cluster '%s' failed; leaving it running for inspection (info file: %s)",
                    handle.name,
                    handle.info_path,
                )
                raise TaskFailed(error=exc, handle=handle) from exc
            logger.warning("Task on cluster '%s' failed; destroying it", handle.name)
            self.release(handle)
            raise TaskFailed(error=exc) from exc

        self.release(handle)
        return result


def _category_suffix(exc: BaseException) -> str:
    if isinstance(exc, AdapterCommandError):
        return f" ({exc.category})"
    return ""
