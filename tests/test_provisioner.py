from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest
import yaml

from clusterlease.cancel import CancelToken
from clusterlease.errors import LeaseCancelled, ProvisioningFailed
from clusterlease.models import ProvisionRequest
from clusterlease.proc import AdapterCommandError
from clusterlease.provisioner import DcosLaunchProvisioner
from clusterlease.services.lease import LeaseManager
from tests.provisioner_utils import completed

DESCRIBE_OUTPUT = {
    "masters": [{"private_ip": "172.16.0.10", "public_ip": "54.1.2.3"}],
    "private_agents": [{"private_ip": "172.16.1.10", "public_ip": None}],
    "public_agents": [{"private_ip": "172.16.2.10", "public_ip": "54.1.2.4"}],
}


def _request(**overrides) -> ProvisionRequest:
    values = dict(
        name="dcos-cli-linux-42",
        template_url="https://example.test/single-master.cloudformation.json",
        region="us-west-2",
        parameters={"DefaultInstanceType": "m4.large", "SlaveInstanceCount": 1},
    )
    values.update(overrides)
    return ProvisionRequest(**values)


def _info_path(cmd: list[str]) -> Path:
    arg = next(part for part in cmd if part.startswith("--info-path="))
    return Path(arg.split("=", 1)[1])


def test_render_config_for_aws(tmp_path) -> None:
    provisioner = DcosLaunchProvisioner(workdir=tmp_path)
    config = provisioner.render_config(_request())

    assert config == {
        "launch_config_version": 1,
        "deployment_name": "dcos-cli-linux-42",
        "template_url": "https://example.test/single-master.cloudformation.json",
        "provider": "aws",
        "aws_region": "us-west-2",
        "key_helper": True,
        "template_parameters": {"DefaultInstanceType": "m4.large", "SlaveInstanceCount": 1},
    }


def test_render_config_rejects_unknown_provider(tmp_path) -> None:
    provisioner = DcosLaunchProvisioner(workdir=tmp_path)
    with pytest.raises(ValueError, match="Unsupported provider"):
        provisioner.render_config(_request(provider="openstack"))


def test_create_writes_yaml_config_and_invokes_binary(tmp_path) -> None:
    calls: list[list[str]] = []
    written: dict = {}

    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        config_arg = next(part for part in cmd if part.startswith("--config-path="))
        written.update(yaml.safe_load(Path(config_arg.split("=", 1)[1]).read_text()))
        _info_path(cmd).write_text(json.dumps({"ssh_user": "core"}))
        return completed(args=cmd)

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, binary="/opt/bin/dcos-launch", runner=runner)
    handle = provisioner.create(_request())

    assert handle.name == "dcos-cli-linux-42"
    assert handle.info_path == tmp_path / "dcos-cli-linux-42" / "cluster_info.json"
    assert calls[0][:2] == ["/opt/bin/dcos-launch", "create"]
    assert written["deployment_name"] == "dcos-cli-linux-42"
    assert written["key_helper"] is True


def test_wait_failure_raises_classified_error(tmp_path) -> None:
    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        return completed(args=cmd, returncode=1, stderr="botocore: Rate exceeded (Throttling)")

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    with pytest.raises(AdapterCommandError) as exc_info:
        provisioner.wait(provisioner.handle_for(_request()))
    assert exc_info.value.retryable is True
    assert exc_info.value.result.command[1] == "wait"


def test_describe_parses_nodes_and_info_file(tmp_path) -> None:
    provisioner = DcosLaunchProvisioner(workdir=tmp_path)
    handle = provisioner.handle_for(_request())
    handle.info_path.parent.mkdir(parents=True)
    handle.info_path.write_text(json.dumps({"ssh_user": "centos", "ssh_private_key": "KEY"}))

    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        assert cmd[1] == "describe"
        return completed(args=cmd, stdout=json.dumps(DESCRIBE_OUTPUT))

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    info = provisioner.describe(handle)

    assert info.dcos_url == "http://54.1.2.3"
    assert info.master_public_ip == "54.1.2.3"
    assert len(info.private_agents) == 1
    assert info.public_agents[0].public_ip == "54.1.2.4"
    assert info.ssh_user == "centos"
    assert info.ssh_private_key == "KEY"
    assert "ssh_private_key" not in info.summary()


def test_describe_rejects_invalid_json(tmp_path) -> None:
    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        return completed(args=cmd, stdout="not json")

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    with pytest.raises(ValueError, match="Invalid JSON"):
        provisioner.describe(provisioner.handle_for(_request()))


def test_describe_requires_master_public_ip(tmp_path) -> None:
    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        return completed(args=cmd, stdout=json.dumps({"masters": []}))

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    with pytest.raises(ValueError, match="no master"):
        provisioner.describe(provisioner.handle_for(_request()))


def test_destroy_without_info_file_is_noop(tmp_path) -> None:
    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        raise AssertionError(f"unexpected command: {cmd}")

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    provisioner.destroy(provisioner.handle_for(_request()))


def test_destroy_deletes_and_removes_info_file(tmp_path) -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return completed(args=cmd)

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    handle = provisioner.handle_for(_request())
    handle.info_path.parent.mkdir(parents=True)
    handle.info_path.write_text("{}")

    provisioner.destroy(handle)

    assert calls[0][1] == "delete"
    assert not handle.info_path.exists()


def test_destroy_treats_missing_stack_as_deleted(tmp_path) -> None:
    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        return completed(args=cmd, returncode=1, stderr="Stack with id dcos-cli-linux-42 does not exist")

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    handle = provisioner.handle_for(_request())
    handle.info_path.parent.mkdir(parents=True)
    handle.info_path.write_text("{}")

    provisioner.destroy(handle)
    assert not handle.info_path.exists()


def test_destroy_propagates_other_errors(tmp_path) -> None:
    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        return completed(args=cmd, returncode=1, stderr="AccessDenied")

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    handle = provisioner.handle_for(_request())
    handle.info_path.parent.mkdir(parents=True)
    handle.info_path.write_text("{}")

    with pytest.raises(AdapterCommandError):
        provisioner.destroy(handle)
    assert handle.info_path.exists()


def test_destroy_runs_even_after_cancellation(tmp_path) -> None:
    cancel = CancelToken()
    cancel.cancel()
    calls: list[list[str]] = []

    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return completed(args=cmd)

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner, cancel=cancel)
    handle = provisioner.handle_for(_request())
    handle.info_path.parent.mkdir(parents=True)
    handle.info_path.write_text("{}")

    with pytest.raises(LeaseCancelled):
        provisioner.wait(handle)
    provisioner.destroy(handle)
    assert [cmd[1] for cmd in calls] == ["delete"]


def test_discard_removes_stale_artifacts(tmp_path) -> None:
    provisioner = DcosLaunchProvisioner(workdir=tmp_path)
    handle = provisioner.handle_for(_request())
    handle.info_path.parent.mkdir(parents=True)
    handle.info_path.write_text("{}")
    (handle.info_path.parent / "config.yaml").write_text("stale: true")

    provisioner.discard(_request())
    provisioner.discard(_request())

    assert list(handle.info_path.parent.iterdir()) == []


def test_failed_delete_keeps_info_file_for_manual_cleanup(tmp_path) -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str], **_) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        if cmd[1] == "create":
            _info_path(cmd).write_text(json.dumps({"stack_id": "arn:aws:cloudformation:stack/1"}))
            return completed(args=cmd)
        if cmd[1] == "wait":
            return completed(args=cmd, returncode=1, stderr="Stack CREATE_FAILED")
        return completed(args=cmd, returncode=1, stderr="AccessDenied: not authorized to perform DeleteStack")

    provisioner = DcosLaunchProvisioner(workdir=tmp_path, runner=runner)
    manager = LeaseManager(provisioner=provisioner)

    with pytest.raises(ProvisioningFailed) as exc_info:
        manager.acquire(_request(), max_attempts=3)

    info_path = provisioner.handle_for(_request()).info_path
    assert [cmd[1] for cmd in calls] == ["create", "wait", "delete"]
    assert info_path.exists()
    assert exc_info.value.orphaned is not None
    assert exc_info.value.orphaned.info_path == info_path
    assert str(info_path) in str(exc_info.value)
