from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class ProvisionRequest:
    name: str
    template_url: str
    region: str
    provider: str = "aws"
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("ProvisionRequest.name must not be empty")
        # Freeze a private copy so later edits to the caller's dict cannot leak in.
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))


@dataclass(frozen=True)
class ProvisionHandle:
    name: str
    info_path: Path


@dataclass(frozen=True)
class ClusterNode:
    private_ip: str | None
    public_ip: str | None


@dataclass(frozen=True)
class ClusterInfo:
    name: str
    dcos_url: str
    masters: tuple[ClusterNode, ...]
    private_agents: tuple[ClusterNode, ...] = ()
    public_agents: tuple[ClusterNode, ...] = ()
    ssh_user: str | None = None
    ssh_private_key: str | None = field(default=None, repr=False)

    @property
    def master_public_ip(self) -> str | None:
        return self.masters[0].public_ip if self.masters else None

    def summary(self) -> dict[str, Any]:
        """Plain-data view for CLI output. The SSH key is never included."""
        return {
            "name": self.name,
            "dcos_url": self.dcos_url,
            "ssh_user": self.ssh_user,
            "masters": [_node_dict(n) for n in self.masters],
            "private_agents": [_node_dict(n) for n in self.private_agents],
            "public_agents": [_node_dict(n) for n in self.public_agents],
        }


def _node_dict(node: ClusterNode) -> dict[str, str | None]:
    return {"private_ip": node.private_ip, "public_ip": node.public_ip}
