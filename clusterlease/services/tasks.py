from __future__ import annotations

from contextlib import contextmanager
import logging
import os
from pathlib import Path
import tempfile
from typing import Iterator, Mapping

from clusterlease.cancel import CancelToken
from clusterlease.models import ClusterInfo
from clusterlease.proc import CommandResult, CommandRunner, run_command

logger = logging.getLogger(__name__)


def cluster_env(info: ClusterInfo, *, ssh_key_path: Path | None) -> dict[str, str]:
    """Environment variables that point a test suite at a leased cluster."""
    env = {
        "DCOS_URL": info.dcos_url,
        "CLI_TEST_MASTER_PROXY": "1",
    }
    if ssh_key_path is not None:
        env["CLI_TEST_SSH_KEY_PATH"] = str(ssh_key_path)
    if info.ssh_user:
        env["CLI_TEST_SSH_USER"] = info.ssh_user
    return env


class CommandTask:
    """Run a test command against a cluster, with connection details in its environment."""

    def __init__(
        self,
        command: list[str],
        *,
        env: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.env = dict(env or {})
        self._runner = runner
        self._cancel = cancel

    def __call__(self, info: ClusterInfo) -> CommandResult:
        with _ssh_key_file(info.ssh_private_key) as key_path:
            env = {**os.environ, **self.env, **cluster_env(info, ssh_key_path=key_path)}
            logger.info("Running task on cluster '%s': %s", info.name, " ".join(self.command))
            result = run_command(
                self.command,
                runner=self._runner,
                env=env,
                cancel=self._cancel,
                error_message=f"Task failed on cluster {info.name}",
            )
        logger.info("Task on cluster '%s' succeeded", info.name)
        return result


@contextmanager
def _ssh_key_file(private_key: str | None) -> Iterator[Path | None]:
    if not private_key:
        yield None
        return
    fd, name = tempfile.mkstemp(prefix="clusterlease-", suffix=".key")
    path = Path(name)
    try:
        # mkstemp already creates the file with mode 0600.
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(private_key)
        logger.debug("Wrote temporary SSH key file: %s", path)
        yield path
    finally:
        path.unlink(missing_ok=True)
        logger.debug("Removed temporary SSH key file: %s", path)
