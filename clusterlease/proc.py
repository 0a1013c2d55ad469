from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess
from typing import Callable, Literal, Mapping

from clusterlease.cancel import CancelToken
from clusterlease.errors import LeaseCancelled

ErrorCategory = Literal["retryable", "fatal"]
CommandRunner = Callable[..., subprocess.CompletedProcess[str]]

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 0.5
TERMINATE_GRACE_SEC = 10.0

_RETRYABLE_PATTERNS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "connection aborted",
    "unable to connect",
    "too many requests",
    "rate limit",
    "rate exceeded",
    "throttling",
    "requestlimitexceeded",
    "service unavailable",
    "internal failure",
)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str


class AdapterCommandError(RuntimeError):
    def __init__(
        self,
        *,
        message: str,
        result: CommandResult,
        category: ErrorCategory,
    ) -> None:
        self.result = result
        self.category = category
        super().__init__(self._build_message(message))

    @property
    def retryable(self) -> bool:
        return self.category == "retryable"

    def _build_message(self, message: str) -> str:
        detail = (self.result.stderr or self.result.stdout).strip()
        if len(detail) > 400:
            detail = f"{detail[:397]}..."
        cmd = " ".join(self.result.command)
        return (
            f"{message} (category={self.category}, returncode={self.result.returncode}, "
            f"command={cmd!r}, detail={detail!r})"
        )


def default_runner(
    command: list[str],
    *,
    env: Mapping[str, str] | None = None,
    cancel: CancelToken | None = None,
) -> subprocess.CompletedProcess[str]:
    logger.debug("Running command: %s", " ".join(command))
    proc = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        env=dict(env) if env is not None else None,
    )
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL_SEC)
            return subprocess.CompletedProcess(command, proc.returncode, stdout, stderr)
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_cancelled:
                _stop(proc)
                raise LeaseCancelled(f"Cancelled while running {command[0]}")
        except KeyboardInterrupt:
            _stop(proc)
            raise


def _stop(proc: subprocess.Popen[str]) -> None:
    logger.warning("Terminating child process pid=%s", proc.pid)
    proc.terminate()
    try:
        proc.communicate(timeout=TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        logger.warning("Child process pid=%s ignored SIGTERM; killing it", proc.pid)
        proc.kill()
        proc.communicate()


def classify_error(*, returncode: int, stderr: str, stdout: str) -> ErrorCategory:
    if returncode < 0:
        return "retryable"
    text = f"{stderr}\n{stdout}".lower()
    if any(pattern in text for pattern in _RETRYABLE_PATTERNS):
        return "retryable"
    return "fatal"


def run_command(
    command: list[str],
    *,
    runner: CommandRunner | None = None,
    error_message: str,
    env: Mapping[str, str] | None = None,
    cancel: CancelToken | None = None,
) -> CommandResult:
    if cancel is not None:
        cancel.raise_if_cancelled()
    active_runner = runner or default_runner
    completed = active_runner(command, env=env, cancel=cancel)
    result = CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    if result.returncode != 0:
        raise AdapterCommandError(
            message=error_message,
            result=result,
            category=classify_error(
                returncode=result.returncode,
                stderr=result.stderr,
                stdout=result.stdout,
            ),
        )
    return result
