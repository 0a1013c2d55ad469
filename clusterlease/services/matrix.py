from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Literal

from clusterlease.cancel import CancelToken
from clusterlease.errors import LeaseCancelled, ProvisioningFailed, TaskFailed
from clusterlease.models import ProvisionRequest
from clusterlease.proc import CommandRunner
from clusterlease.provisioner import Provisioner
from clusterlease.services.lease import LeaseManager, LeasePolicy
from clusterlease.services.tasks import CommandTask

logger = logging.getLogger(__name__)

JobStatus = Literal["passed", "task-failed", "provisioning-failed", "cancelled", "error"]
ProvisionerFactory = Callable[[CancelToken], Provisioner]


@dataclass(frozen=True)
class LeaseJob:
    name: str
    request: ProvisionRequest
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class JobResult:
    name: str
    status: JobStatus
    attempts: int
    error: str | None = None
    # Name of a cluster left running: kept after a task failure, or orphaned by a failed destroy.
    cluster: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "cluster": self.cluster,
        }


def run_job(
    job: LeaseJob,
    *,
    provisioner: Provisioner,
    policy: LeasePolicy,
    cancel: CancelToken,
    task_runner: CommandRunner | None = None,
) -> JobResult:
    """Lease a cluster for one job, run its command and report a tagged outcome."""
    manager = LeaseManager(provisioner=provisioner, cancel=cancel, policy=policy)
    task = CommandTask(job.command, env=job.env, runner=task_runner, cancel=cancel)
    logger.info("Starting job '%s' (cluster=%s)", job.name, job.request.name)
    try:
        manager.with_resource(job.request, task)
    except LeaseCancelled as exc:
        return JobResult(name=job.name, status="cancelled", attempts=manager.last_attempts, error=str(exc))
    except ProvisioningFailed as exc:
        return JobResult(
            name=job.name,
            status="provisioning-failed",
            attempts=exc.attempts,
            error=str(exc.last_error),
            cluster=exc.orphaned.name if exc.orphaned is not None else None,
        )
    except TaskFailed as exc:
        return JobResult(
            name=job.name,
            status="task-failed",
            attempts=manager.last_attempts,
            error=str(exc.error),
            cluster=exc.handle.name if exc.handle is not None else None,
        )
    except Exception as exc:
        logger.exception("Job '%s' crashed after %s attempt(s)", job.name, manager.last_attempts)
        return JobResult(name=job.name, status="error", attempts=manager.last_attempts, error=str(exc))
    logger.info("Job '%s' passed", job.name)
    return JobResult(name=job.name, status="passed", attempts=manager.last_attempts)


def run_jobs(
    jobs: list[LeaseJob],
    *,
    provisioner_factory: ProvisionerFactory,
    policy: LeasePolicy,
    cancel: CancelToken,
    max_workers: int | None = None,
    task_runner: CommandRunner | None = None,
) -> list[JobResult]:
    """Run jobs in parallel, one isolated lease each. Results keep job order."""
    if not jobs:
        return []
    workers = max_workers or len(jobs)
    logger.info("Running %s job(s) with %s worker(s)", len(jobs), workers)

    def _run(job: LeaseJob) -> JobResult:
        try:
            provisioner = provisioner_factory(cancel)
        except Exception as exc:
            logger.exception("Could not set up a provisioner for job '%s'", job.name)
            return JobResult(name=job.name, status="error", attempts=0, error=str(exc))
        return run_job(job, provisioner=provisioner, policy=policy, cancel=cancel, task_runner=task_runner)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lease") as executor:
        futures = [executor.submit(_run, job) for job in jobs]
        results = [future.result() for future in futures]

    for result in results:
        log = logger.info if result.passed else logger.warning
        log("Job '%s' finished: %s", result.name, result.status)
    return results
