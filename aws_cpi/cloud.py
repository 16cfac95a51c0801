import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import httpx

from aws_cpi.clients.aws import ProviderContext
from aws_cpi.clients.http import RetryPolicy
from aws_cpi.clients.registry import RegistryClient
from aws_cpi.config import Settings
from aws_cpi.errors import (
    CloudError,
    InvalidConfiguration,
    NotSupported,
    UnsupportedProtocolVersion,
)
from aws_cpi.schemas import (
    parse_disk_props,
    parse_network_props,
    parse_stemcell_props,
    parse_vm_props,
)
from aws_cpi.services.agent_settings import SUPPORTED_VERSIONS
from aws_cpi.services.instances import (
    AvailabilityZoneSelector,
    InstanceManager,
    InstanceTypeMapper,
)
from aws_cpi.services.load_balancers import LoadBalancerRegistrar
from aws_cpi.services.network import NetworkConfigurator
from aws_cpi.services.provisioner import VmProvisioner, VmRequest
from aws_cpi.services.resource_wait import ResourceWaiter
from aws_cpi.services.stemcells import StemcellManager
from aws_cpi.services.tags import TagApplier
from aws_cpi.services.volume_properties import VolumeSpec
from aws_cpi.services.volumes import VolumeLifecycleManager


logger = logging.getLogger(__name__)

STEMCELL_FORMATS = ["aws-raw", "aws-light"]
MAX_API_VERSION = 2

OPERATIONS = frozenset(
    {
        "create_vm",
        "delete_vm",
        "reboot_vm",
        "has_vm",
        "set_vm_metadata",
        "create_disk",
        "has_disk",
        "delete_disk",
        "attach_disk",
        "detach_disk",
        "get_disks",
        "set_disk_metadata",
        "snapshot_disk",
        "delete_snapshot",
        "configure_networks",
        "create_stemcell",
        "delete_stemcell",
        "calculate_vm_cloud_properties",
        "info",
    }
)


@contextmanager
def thread_name(name: str) -> Iterator[None]:
    thread = threading.current_thread()
    previous = thread.name
    thread.name = name
    try:
        yield
    finally:
        thread.name = previous


def vm_display_name(metadata: dict[str, Any]) -> str | None:
    if metadata.get("name"):
        return str(metadata["name"])
    job = metadata.get("job")
    index = metadata.get("index")
    if job and index is not None:
        return f"{job}/{index}"
    if metadata.get("compiling"):
        return f"compiling/{metadata['compiling']}"
    return None


class Cloud:
    """Director-facing operations for one request and its negotiated versions."""

    def __init__(
        self,
        settings: Settings,
        provider: ProviderContext,
        *,
        api_version: int = 1,
        stemcell_api_version: int = 1,
        registry: RegistryClient | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        metadata_client: httpx.Client | None = None,
    ):
        if api_version not in SUPPORTED_VERSIONS:
            raise UnsupportedProtocolVersion(api_version)
        self.settings = settings
        self.provider = provider
        self.api_version = api_version
        self.stemcell_api_version = stemcell_api_version
        self.registry = registry

        ec2 = provider.ec2
        self.waiter = ResourceWaiter(sleep=sleep)
        self.tagger = TagApplier(ec2, sleep=sleep)
        self.volumes = VolumeLifecycleManager(ec2, self.waiter, self.tagger, sleep=sleep)
        self.instances = InstanceManager(ec2, self.waiter)
        self.az_selector = AvailabilityZoneSelector(ec2, self.instances)
        self.instance_types = InstanceTypeMapper()
        self.stemcells = StemcellManager(
            ec2,
            self.waiter,
            self.volumes,
            self.instances,
            region=provider.region,
            metadata_client=metadata_client,
        )
        self.provisioner = VmProvisioner(
            settings=settings,
            provider=provider,
            stemcells=self.stemcells,
            instances=self.instances,
            volumes=self.volumes,
            az_selector=self.az_selector,
            load_balancers=LoadBalancerRegistrar(provider.elbv2, provider.elb),
            network=NetworkConfigurator(ec2),
            registry=registry,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        api_version: int = 1,
        stemcell_api_version: int = 1,
    ) -> "Cloud":
        provider = ProviderContext.from_settings(settings)
        registry = None
        if settings.registry_enabled:
            registry = RegistryClient(
                settings.registry_endpoint or "",
                settings.registry_user or "",
                settings.registry_password or "",
                RetryPolicy(
                    attempts=settings.retry_attempts,
                    sleep_sec=settings.retry_sleep_sec,
                ),
            )
        return cls(
            settings,
            provider,
            api_version=api_version,
            stemcell_api_version=stemcell_api_version,
            registry=registry,
        )

    def close(self) -> None:
        self.stemcells.metadata_client.close()
        if self.registry is not None:
            self.registry.close()

    @property
    def uses_registry(self) -> bool:
        return self.registry is not None and self.stemcell_api_version < 2

    def create_vm(
        self,
        agent_id: str,
        stemcell_id: str,
        vm_type: dict[str, Any],
        networks: dict[str, Any],
        disk_locality: list[str] | None = None,
        environment: dict[str, Any] | None = None,
    ) -> Any:
        with thread_name(f"create_vm({agent_id}, ...)"):
            request = VmRequest(
                agent_id=agent_id,
                stemcell_id=stemcell_id,
                vm_props=parse_vm_props(vm_type, self.settings),
                network_props=parse_network_props(networks),
                disk_locality=list(disk_locality or []),
                environment=environment,
                stemcell_api_version=self.stemcell_api_version,
            )
            result = self.provisioner.create_vm(request)
            if self.api_version >= 2:
                return [result.instance_id, result.agent_config.disk_hints()]
            return result.instance_id

    def delete_vm(self, instance_id: str) -> None:
        with thread_name(f"delete_vm({instance_id})"):
            logger.info("deleting instance %s", instance_id)
            self.instances.terminate(instance_id, self.settings.fast_path_delete)
            if self.registry is not None:
                self.registry.delete_settings(instance_id)

    def reboot_vm(self, instance_id: str) -> None:
        with thread_name(f"reboot_vm({instance_id})"):
            self.instances.reboot(instance_id)

    def has_vm(self, instance_id: str) -> bool:
        with thread_name(f"has_vm({instance_id})"):
            return self.instances.exists(instance_id)

    def set_vm_metadata(self, instance_id: str, metadata: dict[str, Any]) -> None:
        with thread_name(f"set_vm_metadata({instance_id}, ...)"):
            tags = {str(key): value for key, value in metadata.items()}
            name = vm_display_name(tags)
            tags.pop("name", None)
            if name:
                tags["Name"] = name
            self.tagger.apply(instance_id, tags)

    def create_disk(
        self,
        size: int,
        cloud_properties: dict[str, Any] | None,
        instance_id: str | None = None,
    ) -> str:
        if isinstance(size, bool) or not isinstance(size, int):
            raise InvalidConfiguration("disk size needs to be an integer")
        with thread_name(f"create_disk({size}, {instance_id})"):
            props = parse_disk_props(cloud_properties, self.settings)
            config = VolumeSpec(
                size_mb=size,
                type=props.type,
                iops=props.iops,
                availability_zone=self.az_selector.select_availability_zone(
                    instance_id
                ),
                encrypted=props.encrypted,
                kms_key_arn=props.kms_key_arn,
            ).persistent_disk_config()
            return self.volumes.create(config)

    def has_disk(self, disk_id: str) -> bool:
        with thread_name(f"has_disk({disk_id})"):
            logger.info("checking the presence of disk %s", disk_id)
            return self.volumes.exists(disk_id)

    def delete_disk(self, disk_id: str) -> None:
        with thread_name(f"delete_disk({disk_id})"):
            self.volumes.delete(disk_id, self.settings.fast_path_delete)

    def attach_disk(
        self,
        instance_id: str,
        disk_id: str,
        disk_hints: dict[str, Any] | None = None,
    ) -> str | None:
        with thread_name(f"attach_disk({instance_id}, {disk_id})"):
            device = self.volumes.attach(instance_id, disk_id)
            if self.uses_registry:
                with self._agent_settings(instance_id) as settings:
                    disks = settings.setdefault("disks", {})
                    disks.setdefault("persistent", {})[disk_id] = device
            logger.info("attached %s to %s at %s", disk_id, instance_id, device)
            if self.api_version >= 2:
                return device
            return None

    def detach_disk(self, instance_id: str, disk_id: str) -> None:
        with thread_name(f"detach_disk({instance_id}, {disk_id})"):
            if self.volumes.exists(disk_id):
                self.volumes.detach(instance_id, disk_id)
            else:
                logger.info(
                    "disk %s not found while trying to detach it from %s",
                    disk_id,
                    instance_id,
                )
            if self.uses_registry:
                with self._agent_settings(instance_id) as settings:
                    disks = settings.setdefault("disks", {})
                    disks.setdefault("persistent", {}).pop(disk_id, None)
            logger.info("detached %s from %s", disk_id, instance_id)

    def get_disks(self, instance_id: str) -> list[str]:
        return self.instances.block_device_volume_ids(instance_id)

    def set_disk_metadata(self, disk_id: str, metadata: dict[str, Any]) -> None:
        with thread_name(f"set_disk_metadata({disk_id}, ...)"):
            self.tagger.apply(disk_id, metadata)

    def snapshot_disk(self, disk_id: str, metadata: dict[str, Any]) -> str:
        with thread_name(f"snapshot_disk({disk_id})"):
            return self.volumes.snapshot(disk_id, metadata or {})

    def delete_snapshot(self, snapshot_id: str) -> None:
        with thread_name(f"delete_snapshot({snapshot_id})"):
            self.volumes.delete_snapshot(snapshot_id)

    def configure_networks(self, *_args: Any) -> None:
        raise NotSupported("configure_networks is no longer supported")

    def create_stemcell(
        self, image_path: str, cloud_properties: dict[str, Any] | None
    ) -> str:
        with thread_name(f"create_stemcell({image_path}...)"):
            props = parse_stemcell_props(cloud_properties)
            if props.is_light:
                return self.stemcells.create_light(props)
            return self.stemcells.create_from_image(image_path, props)

    def delete_stemcell(self, stemcell_id: str) -> None:
        with thread_name(f"delete_stemcell({stemcell_id})"):
            self.stemcells.delete(self.stemcells.find_image(stemcell_id))

    def calculate_vm_cloud_properties(
        self, vm_properties: dict[str, Any]
    ) -> dict[str, Any]:
        required = ["cpu", "ram", "ephemeral_disk_size"]
        missing = [f"'{key}'" for key in required if not vm_properties.get(key)]
        if missing:
            raise InvalidConfiguration(
                f"Missing VM cloud properties: {', '.join(missing)}"
            )
        return {
            "instance_type": self.instance_types.map(vm_properties),
            "ephemeral_disk": {"size": vm_properties["ephemeral_disk_size"]},
        }

    def info(self) -> dict[str, Any]:
        return {"stemcell_formats": list(STEMCELL_FORMATS), "api_version": MAX_API_VERSION}

    @contextmanager
    def _agent_settings(self, instance_id: str) -> Iterator[dict[str, Any]]:
        if self.registry is None:
            raise CloudError("agent settings registry is not configured")
        settings = self.registry.read_settings(instance_id)
        yield settings
        self.registry.update_settings(instance_id, settings)
