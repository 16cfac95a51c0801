import math
from dataclasses import dataclass, field
from typing import Any


DEFAULT_VOLUME_TYPE = "gp2"
EPHEMERAL_DEVICE_NAME = "/dev/sdb"
DEFAULT_ROOT_DEVICE_NAME = "/dev/xvda"


def mib_to_gib(size_mb: int) -> int:
    return math.ceil(size_mb / 1024)


@dataclass
class VolumeSpec:
    size_mb: int = 0
    type: str | None = None
    iops: int | None = None
    availability_zone: str | None = None
    encrypted: bool = False
    kms_key_arn: str | None = None
    root_device_name: str | None = None
    tags: list[dict[str, str]] = field(default_factory=list)

    @property
    def volume_type(self) -> str:
        return self.type or DEFAULT_VOLUME_TYPE

    def ephemeral_disk_config(self) -> dict[str, Any]:
        ebs: dict[str, Any] = {
            "VolumeSize": mib_to_gib(self.size_mb),
            "VolumeType": self.volume_type,
        }
        if self.iops:
            ebs["Iops"] = self.iops
        if self.encrypted:
            ebs["Encrypted"] = True
        if self.kms_key_arn:
            ebs["KmsKeyId"] = self.kms_key_arn
        ebs["DeleteOnTermination"] = True
        return {"DeviceName": EPHEMERAL_DEVICE_NAME, "Ebs": ebs}

    def persistent_disk_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "Size": mib_to_gib(self.size_mb),
            "AvailabilityZone": self.availability_zone,
            "VolumeType": self.volume_type,
            "Encrypted": bool(self.encrypted),
        }
        if self.iops:
            config["Iops"] = self.iops
        if self.kms_key_arn:
            config["KmsKeyId"] = self.kms_key_arn
        if self.tags:
            config["TagSpecifications"] = [
                {"ResourceType": "volume", "Tags": list(self.tags)}
            ]
        return config

    def root_disk_config(self) -> dict[str, Any]:
        ebs: dict[str, Any] = {}
        if self.size_mb:
            ebs["VolumeSize"] = mib_to_gib(self.size_mb)
        ebs["VolumeType"] = self.volume_type
        if self.iops:
            ebs["Iops"] = self.iops
        ebs["DeleteOnTermination"] = True
        return {
            "DeviceName": self.root_device_name or DEFAULT_ROOT_DEVICE_NAME,
            "Ebs": ebs,
        }
