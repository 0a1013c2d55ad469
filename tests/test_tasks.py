from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from clusterlease.models import ClusterInfo, ClusterNode
from clusterlease.proc import AdapterCommandError
from clusterlease.services.tasks import CommandTask, cluster_env
from tests.provisioner_utils import completed


def _info(**overrides) -> ClusterInfo:
    values = dict(
        name="dcos-cli-linux",
        dcos_url="http://54.1.2.3",
        masters=(ClusterNode(private_ip="172.16.0.10", public_ip="54.1.2.3"),),
        ssh_user="core",
        ssh_private_key="PRIVATE KEY",
    )
    values.update(overrides)
    return ClusterInfo(**values)


def test_cluster_env_without_key() -> None:
    env = cluster_env(_info(ssh_user=None), ssh_key_path=None)
    assert env == {"DCOS_URL": "http://54.1.2.3", "CLI_TEST_MASTER_PROXY": "1"}


def test_command_task_exports_cluster_env_and_cleans_up_key() -> None:
    seen: dict = {}

    def runner(cmd: list[str], *, env=None, cancel=None) -> subprocess.CompletedProcess[str]:
        key_path = Path(env["CLI_TEST_SSH_KEY_PATH"])
        seen["key"] = key_path.read_text()
        seen["mode"] = key_path.stat().st_mode & 0o777
        seen["path"] = key_path
        seen["env"] = env
        return completed(args=cmd, stdout="5 passed")

    task = CommandTask(["tox", "-e", "py35-integration"], env={"CLI_TEST_PLATFORM": "linux"}, runner=runner)
    result = task(_info())

    assert result.stdout == "5 passed"
    assert seen["key"] == "PRIVATE KEY"
    assert seen["mode"] == 0o600
    assert not seen["path"].exists()
    assert seen["env"]["DCOS_URL"] == "http://54.1.2.3"
    assert seen["env"]["CLI_TEST_SSH_USER"] == "core"
    assert seen["env"]["CLI_TEST_PLATFORM"] == "linux"


def test_command_task_failure_raises_and_removes_key() -> None:
    seen: dict = {}

    def runner(cmd: list[str], *, env=None, cancel=None) -> subprocess.CompletedProcess[str]:
        seen["path"] = Path(env["CLI_TEST_SSH_KEY_PATH"])
        return completed(args=cmd, returncode=1, stdout="1 failed")

    task = CommandTask(["pytest"], runner=runner)
    with pytest.raises(AdapterCommandError, match="Task failed on cluster dcos-cli-linux"):
        task(_info())
    assert not seen["path"].exists()


def test_command_task_requires_command() -> None:
    with pytest.raises(ValueError):
        CommandTask([])
