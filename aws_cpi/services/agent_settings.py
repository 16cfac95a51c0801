"""Settings documents consumed by the agent running inside a new VM.

Disk conventions on AWS: the system disk is the image's root device, the
ephemeral disk is ``/dev/sdb``, persistent EBS volumes are attached at
``/dev/sdf`` through ``/dev/sdp`` later on (some kernels remap ``sd*`` to
``xvd*``), and raw instance-store disks start at ``/dev/xvdba``.

Two encodings exist. Version 1 is the bootstrap payload placed in user
data; the agent uses it to find the registry and fetch the full settings.
Version 2 carries the full settings inline together with the bootstrap
fields, so no registry round-trip is needed.
"""

import base64
import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from aws_cpi.errors import UnsupportedProtocolVersion
from aws_cpi.schemas import NetworkProps


SUPPORTED_VERSIONS = (1, 2)
NETWORK_TYPES_WITHOUT_DHCP = {"vip"}


def agent_network_spec(network_props: NetworkProps) -> dict[str, dict[str, Any]]:
    spec: dict[str, dict[str, Any]] = {}
    for network in network_props.networks:
        settings = network.to_agent_spec()
        if network.type not in NETWORK_TYPES_WITHOUT_DHCP:
            settings["use_dhcp"] = True
        spec[network.name] = settings
    return spec


def _single_path(entries: Any) -> str | None:
    if isinstance(entries, list):
        if not entries:
            return None
        first = entries[0]
        return first.get("path") if isinstance(first, dict) else first
    if isinstance(entries, dict):
        return entries.get("path")
    return entries


@dataclass
class AgentConfig:
    agent_id: str
    networks: dict[str, dict[str, Any]]
    root_device_name: str
    disk_info: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    registry_endpoint: str | None = None
    dns: dict[str, Any] | None = None
    vm_name: str = field(default_factory=lambda: f"vm-{uuid.uuid4()}")

    @classmethod
    def build(
        cls,
        *,
        agent_id: str,
        network_props: NetworkProps,
        root_device_name: str,
        disk_info: dict[str, Any],
        environment: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
        registry_endpoint: str | None = None,
    ) -> "AgentConfig":
        return cls(
            agent_id=agent_id,
            networks=agent_network_spec(network_props),
            root_device_name=root_device_name,
            disk_info=dict(disk_info),
            environment=environment,
            extra=dict(extra or {}),
            registry_endpoint=registry_endpoint,
            dns=network_props.dns,
        )

    def disks(self) -> dict[str, Any]:
        disks: dict[str, Any] = {"system": self.root_device_name, "persistent": {}}
        for role, entries in self.disk_info.items():
            disks[role] = entries
        disks["ephemeral"] = _single_path(self.disk_info.get("ephemeral"))
        return disks

    def agent_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = {
            "vm": {"name": self.vm_name},
            "agent_id": self.agent_id,
            "networks": self.networks,
            "disks": self.disks(),
        }
        if self.environment:
            settings["env"] = self.environment
        settings.update(self.extra)
        return settings

    def user_data(self) -> dict[str, Any]:
        return {
            "registry": {"endpoint": self.registry_endpoint},
            "dns": self.dns,
            "networks": self.networks,
        }

    def settings_for_version(self, version: int) -> dict[str, Any]:
        if version == 1:
            return self.user_data()
        if version == 2:
            return {**self.agent_settings(), **self.user_data()}
        raise UnsupportedProtocolVersion(version)

    def disk_hints(self) -> dict[str, Any]:
        hints = self.disks()
        hints.pop("persistent", None)
        return hints


class AgentConfigEncoder:
    def encode(self, version: int, config: AgentConfig) -> bytes:
        document = config.settings_for_version(version)
        return base64.b64encode(json.dumps(document).encode("utf-8"))
