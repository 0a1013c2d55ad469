from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

import yaml

from clusterlease.cancel import CancelToken
from clusterlease.models import ClusterInfo, ClusterNode, ProvisionHandle, ProvisionRequest
from clusterlease.proc import AdapterCommandError, CommandRunner, run_command

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
INFO_FILENAME = "cluster_info.json"
LAUNCH_CONFIG_VERSION = 1

_REGION_KEYS = {
    "aws": "aws_region",
    "azure": "azure_location",
}
_ALREADY_DELETED_PATTERNS = ("does not exist", "not found")


class Provisioner(Protocol):
    def handle_for(self, request: ProvisionRequest) -> ProvisionHandle: ...

    def discard(self, request: ProvisionRequest) -> None: ...

    def create(self, request: ProvisionRequest) -> ProvisionHandle: ...

    def wait(self, handle: ProvisionHandle) -> None: ...

    def describe(self, handle: ProvisionHandle) -> ClusterInfo: ...

    def destroy(self, handle: ProvisionHandle) -> None: ...


class DcosLaunchProvisioner:
    """Provisioner backed by the `dcos-launch` command-line tool."""

    def __init__(
        self,
        *,
        workdir: Path,
        binary: str = "dcos-launch",
        runner: CommandRunner | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self._workdir = Path(workdir)
        self._binary = binary
        self._runner = runner
        self._cancel = cancel

    def handle_for(self, request: ProvisionRequest) -> ProvisionHandle:
        return self.handle_for_name(request.name)

    def handle_for_name(self, name: str) -> ProvisionHandle:
        return ProvisionHandle(name=name, info_path=self._workdir / name / INFO_FILENAME)

    def discard(self, request: ProvisionRequest) -> None:
        directory = self._workdir / request.name
        for filename in (CONFIG_FILENAME, INFO_FILENAME):
            path = directory / filename
            if path.exists():
                path.unlink()
                logger.debug("Removed stale launch artifact: %s", path)

    def render_config(self, request: ProvisionRequest) -> dict[str, Any]:
        region_key = _REGION_KEYS.get(request.provider)
        if region_key is None:
            raise ValueError(f"Unsupported provider {request.provider!r}; expected one of {sorted(_REGION_KEYS)}")
        return {
            "launch_config_version": LAUNCH_CONFIG_VERSION,
            "deployment_name": request.name,
            "template_url": request.template_url,
            "provider": request.provider,
            region_key: request.region,
            "key_helper": True,
            "template_parameters": dict(request.parameters),
        }

    def create(self, request: ProvisionRequest) -> ProvisionHandle:
        handle = self.handle_for(request)
        config_path = handle.info_path.with_name(CONFIG_FILENAME)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(yaml.safe_dump(self.render_config(request), sort_keys=False), encoding="utf-8")
        logger.info(
            "Creating cluster '%s' (provider=%s region=%s template=%s)",
            request.name,
            request.provider,
            request.region,
            request.template_url,
        )
        run_command(
            [self._binary, "create", f"--config-path={config_path}", f"--info-path={handle.info_path}"],
            runner=self._runner,
            cancel=self._cancel,
            error_message=f"Failed to create cluster {request.name}",
        )
        logger.info("Cluster creation accepted: %s", request.name)
        return handle

    def wait(self, handle: ProvisionHandle) -> None:
        logger.info("Waiting for cluster '%s' to become ready", handle.name)
        run_command(
            [self._binary, "wait", f"--info-path={handle.info_path}"],
            runner=self._runner,
            cancel=self._cancel,
            error_message=f"Cluster {handle.name} did not become ready",
        )
        logger.info("Cluster is ready: %s", handle.name)

    def describe(self, handle: ProvisionHandle) -> ClusterInfo:
        logger.debug("Describing cluster '%s'", handle.name)
        result = run_command(
            [self._binary, "describe", f"--info-path={handle.info_path}"],
            runner=self._runner,
            cancel=self._cancel,
            error_message=f"Failed to describe cluster {handle.name}",
        )
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON from dcos-launch describe for cluster {handle.name}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected dcos-launch describe output for cluster {handle.name}")

        masters = _parse_nodes(payload.get("masters"))
        if not masters or not masters[0].public_ip:
            raise ValueError(f"Cluster {handle.name} reports no master with a public IP")

        info = self._read_info(handle)
        return ClusterInfo(
            name=handle.name,
            dcos_url=f"http://{masters[0].public_ip}",
            masters=masters,
            private_agents=_parse_nodes(payload.get("private_agents")),
            public_agents=_parse_nodes(payload.get("public_agents")),
            ssh_user=info.get("ssh_user") if isinstance(info.get("ssh_user"), str) else None,
            ssh_private_key=info.get("ssh_private_key") if isinstance(info.get("ssh_private_key"), str) else None,
        )

    def destroy(self, handle: ProvisionHandle) -> None:
        if not handle.info_path.exists():
            logger.info("No info file for cluster '%s'; nothing to destroy", handle.name)
            return
        logger.info("Destroying cluster '%s'", handle.name)
        try:
            run_command(
                [self._binary, "delete", f"--info-path={handle.info_path}"],
                runner=self._runner,
                error_message=f"Failed to delete cluster {handle.name}",
            )
        except AdapterCommandError as exc:
            text = f"{exc.result.stderr}\n{exc.result.stdout}".lower()
            if not any(pattern in text for pattern in _ALREADY_DELETED_PATTERNS):
                raise
            logger.debug("Cluster was already absent: %s", handle.name)
        handle.info_path.unlink(missing_ok=True)
        logger.info("Destroyed cluster: %s", handle.name)

    def _read_info(self, handle: ProvisionHandle) -> dict[str, Any]:
        try:
            payload = json.loads(handle.info_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unable to read info file %s: %s", handle.info_path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}


def _parse_nodes(raw: Any) -> tuple[ClusterNode, ...]:
    if not isinstance(raw, list):
        return ()
    nodes = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        nodes.append(ClusterNode(private_ip=entry.get("private_ip"), public_ip=entry.get("public_ip")))
    return tuple(nodes)
