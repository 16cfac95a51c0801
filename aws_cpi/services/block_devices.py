import logging
import string
from dataclasses import dataclass, field
from typing import Any

from aws_cpi.errors import InvalidConfiguration
from aws_cpi.schemas import VmCloudProps
from aws_cpi.services.volume_properties import EPHEMERAL_DEVICE_NAME, VolumeSpec


logger = logging.getLogger(__name__)

RAW_EPHEMERAL_PREFIX = "/dev/xvdb"

# instance type -> number of instance-store disks
INSTANCE_STORAGE_DISKS: dict[str, int] = {
    "m3.medium": 1,
    "m3.large": 1,
    "m3.xlarge": 2,
    "m3.2xlarge": 2,
    "c3.large": 2,
    "c3.xlarge": 2,
    "c3.2xlarge": 2,
    "c3.4xlarge": 2,
    "c3.8xlarge": 2,
    "r3.large": 1,
    "r3.xlarge": 1,
    "r3.2xlarge": 1,
    "r3.4xlarge": 1,
    "r3.8xlarge": 2,
    "i3.large": 1,
    "i3.xlarge": 1,
    "i3.2xlarge": 1,
    "i3.4xlarge": 2,
    "i3.8xlarge": 4,
    "i3.16xlarge": 8,
    "d2.xlarge": 3,
    "d2.2xlarge": 6,
    "d2.4xlarge": 12,
    "d2.8xlarge": 24,
    "m5d.large": 1,
    "m5d.xlarge": 1,
    "m5d.2xlarge": 1,
    "m5d.4xlarge": 2,
    "c5d.large": 1,
    "c5d.xlarge": 1,
    "c5d.2xlarge": 1,
    "c5d.4xlarge": 1,
}


@dataclass
class BlockDeviceLayout:
    mappings: list[dict[str, Any]]
    agent_disk_info: dict[str, list[dict[str, str]]] = field(default_factory=dict)

    @property
    def device_names(self) -> list[str]:
        return [m["DeviceName"] for m in self.mappings]


def raw_ephemeral_device_names(count: int) -> list[str]:
    if count > len(string.ascii_lowercase):
        raise InvalidConfiguration(f"too many raw ephemeral disks requested ({count})")
    return [f"{RAW_EPHEMERAL_PREFIX}{string.ascii_lowercase[i]}" for i in range(count)]


def _require_positive(value: Any, what: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidConfiguration(f"{what} must be a positive integer, got {value!r}")


class BlockDeviceMapper:
    def compute(
        self,
        image_root_device: str,
        vm_props: VmCloudProps,
        temp_snapshot_id: str | None = None,
    ) -> BlockDeviceLayout:
        mappings = [self._root_mapping(image_root_device, vm_props)]
        ephemeral = self._ephemeral_mapping(vm_props, temp_snapshot_id)
        mappings.append(ephemeral)
        info: dict[str, list[dict[str, str]]] = {
            "ephemeral": [{"path": ephemeral["DeviceName"]}]
        }

        if vm_props.raw_instance_storage:
            raw = self._raw_ephemeral_mappings(vm_props)
            mappings.extend(raw)
            info["raw_ephemeral"] = [{"path": m["DeviceName"]} for m in raw]

        names = [m["DeviceName"] for m in mappings]
        if len(set(names)) != len(names):
            raise InvalidConfiguration(
                f"duplicate device names in block device mapping: {names}"
            )
        logger.debug("block device mappings=%s agent_disk_info=%s", mappings, info)
        return BlockDeviceLayout(mappings=mappings, agent_disk_info=info)

    def _root_mapping(
        self, image_root_device: str, vm_props: VmCloudProps
    ) -> dict[str, Any]:
        root = vm_props.root_disk
        if root is None:
            return VolumeSpec(root_device_name=image_root_device).root_disk_config()
        if root.size is not None:
            _require_positive(root.size, "root_disk.size")
        return VolumeSpec(
            size_mb=root.size or 0,
            type=root.type,
            iops=root.iops,
            root_device_name=root.device_name or image_root_device,
        ).root_disk_config()

    def _ephemeral_mapping(
        self, vm_props: VmCloudProps, temp_snapshot_id: str | None
    ) -> dict[str, Any]:
        disk = vm_props.ephemeral_disk
        if disk.use_instance_storage:
            if vm_props.raw_instance_storage:
                raise InvalidConfiguration(
                    "ephemeral_disk.use_instance_storage and raw_instance_storage cannot both be true"
                )
            return {"DeviceName": EPHEMERAL_DEVICE_NAME, "VirtualName": "ephemeral0"}

        _require_positive(disk.size, "ephemeral_disk.size")
        mapping = VolumeSpec(
            size_mb=disk.size,
            type=disk.type,
            iops=disk.iops,
            encrypted=bool(disk.encrypted),
            kms_key_arn=disk.kms_key_arn,
        ).ephemeral_disk_config()
        if temp_snapshot_id:
            # encryption and key are inherited from the snapshot
            mapping["Ebs"].pop("Encrypted", None)
            mapping["Ebs"].pop("KmsKeyId", None)
            mapping["Ebs"]["SnapshotId"] = temp_snapshot_id
        return mapping

    def _raw_ephemeral_mappings(self, vm_props: VmCloudProps) -> list[dict[str, Any]]:
        count = INSTANCE_STORAGE_DISKS.get(vm_props.instance_type or "", 0)
        if count == 0:
            raise InvalidConfiguration(
                f"raw_instance_storage requested for instance type '{vm_props.instance_type}' "
                "that has no instance storage"
            )
        return [
            {"DeviceName": name, "VirtualName": f"ephemeral{i}"}
            for i, name in enumerate(raw_ephemeral_device_names(count))
        ]
