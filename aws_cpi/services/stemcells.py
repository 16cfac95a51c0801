import logging
import subprocess
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from botocore.exceptions import ClientError

from aws_cpi.clients.aws import is_not_found, provider_error
from aws_cpi.errors import CloudError, ImageNotFound
from aws_cpi.schemas import StemcellProps
from aws_cpi.services.instances import InstanceManager
from aws_cpi.services.resource_wait import ResourceWaiter
from aws_cpi.services.volume_properties import EPHEMERAL_DEVICE_NAME, VolumeSpec
from aws_cpi.services.volumes import VolumeLifecycleManager


logger = logging.getLogger(__name__)

LIGHT_SUFFIX = " light"
METADATA_URL = "http://169.254.169.254/latest/meta-data/instance-id/"
METADATA_TIMEOUT = 5.0


@dataclass
class Image:
    image_id: str
    root_device_name: str
    snapshot_ids: list[str] = field(default_factory=list)
    light: bool = False


def _snapshot_ids(image: dict[str, Any]) -> list[str]:
    return [
        mapping["Ebs"]["SnapshotId"]
        for mapping in image.get("BlockDeviceMappings", [])
        if mapping.get("Ebs", {}).get("SnapshotId")
    ]


class StemcellManager:
    def __init__(
        self,
        ec2,
        waiter: ResourceWaiter,
        volumes: VolumeLifecycleManager,
        instances: InstanceManager,
        region: str | None = None,
        metadata_client: httpx.Client | None = None,
    ):
        self.ec2 = ec2
        self.waiter = waiter
        self.volumes = volumes
        self.instances = instances
        self.region = region
        self.metadata_client = metadata_client or httpx.Client(timeout=METADATA_TIMEOUT)
        self._current_vm_id: str | None = None

    def find_image(self, stemcell_id: str) -> Image:
        light = stemcell_id.endswith(LIGHT_SUFFIX)
        image_id = stemcell_id[: -len(LIGHT_SUFFIX)] if light else stemcell_id
        try:
            images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
        except ClientError as exc:
            if is_not_found(exc):
                raise ImageNotFound(image_id) from exc
            raise provider_error(exc) from exc
        if not images:
            raise ImageNotFound(image_id)
        image = images[0]
        return Image(
            image_id=image["ImageId"],
            root_device_name=image.get("RootDeviceName") or "/dev/xvda",
            snapshot_ids=_snapshot_ids(image),
            light=light,
        )

    def delete(self, image: Image) -> None:
        if image.light:
            logger.info("light stemcell %s, not deleting the AMI", image.image_id)
            return
        try:
            self.ec2.deregister_image(ImageId=image.image_id)
        except ClientError as exc:
            if not is_not_found(exc):
                raise provider_error(exc) from exc
        logger.info("deregistered image %s", image.image_id)
        self.waiter.for_image(self.ec2, image.image_id, "deregistered")
        for snapshot_id in image.snapshot_ids:
            self.volumes.delete_snapshot(snapshot_id)

    def create_light(self, props: StemcellProps) -> str:
        try:
            images = self.ec2.describe_images(
                Filters=[{"Name": "image-id", "Values": props.ami_ids}]
            ).get("Images", [])
        except ClientError as exc:
            raise provider_error(exc) from exc
        if not images:
            raise CloudError(
                f"Stemcell does not contain an AMI in region {self.region}"
            )
        available_id = images[0]["ImageId"]

        if not props.encrypted:
            return f"{available_id}{LIGHT_SUFFIX}"

        source_id = props.region_ami(self.region) or available_id
        params: dict[str, Any] = {
            "SourceRegion": self.region,
            "SourceImageId": source_id,
            "Name": f"Copied from SourceAMI {source_id}",
            "Encrypted": True,
        }
        if props.kms_key_arn:
            params["KmsKeyId"] = props.kms_key_arn
        try:
            encrypted_id = self.ec2.copy_image(**params)["ImageId"]
        except ClientError as exc:
            raise provider_error(exc) from exc
        logger.info("copying %s to encrypted image %s", source_id, encrypted_id)
        self.waiter.for_image(self.ec2, encrypted_id, "available")
        return encrypted_id

    def current_vm_id(self) -> str:
        if self._current_vm_id:
            return self._current_vm_id
        try:
            response = self.metadata_client.get(METADATA_URL)
        except httpx.TimeoutException as exc:
            raise CloudError(
                "Timed out reading instance metadata, "
                "please make sure CPI is running on EC2 instance"
            ) from exc
        except httpx.RequestError as exc:
            raise CloudError(f"Cannot reach instance metadata endpoint: {exc}") from exc
        if response.status_code != 200:
            raise CloudError(
                f"Instance metadata endpoint returned HTTP {response.status_code}"
            )
        self._current_vm_id = response.text.strip()
        return self._current_vm_id

    def create_from_image(self, image_path: str, props: StemcellProps) -> str:
        """Copy a raw root image onto a scratch volume of this VM and register it.

        The scratch volume is always detached and deleted, also when the copy
        or the registration fails.
        """
        vm_id = self.current_vm_id()
        if not self.instances.exists(vm_id):
            raise CloudError(
                f"Could not locate the current VM with id '{vm_id}'. "
                "Ensure that the current VM is located in the same region "
                "as configured in the manifest."
            )
        config = VolumeSpec(
            size_mb=props.disk,
            availability_zone=self.instances.availability_zone(vm_id),
            encrypted=props.encrypted,
            kms_key_arn=props.kms_key_arn,
        ).persistent_disk_config()
        volume_id = self.volumes.create(config)
        try:
            device = self.volumes.attach(vm_id, volume_id)
            device_path = self.volumes.find_device_path(device)
            logger.info("creating stemcell from %s on volume %s", image_path, volume_id)
            self._copy_image(image_path, device_path)
            snapshot_id = self.volumes.create_snapshot(volume_id, "bosh stemcell")
            return self._register(snapshot_id, props)
        finally:
            self._release_scratch_volume(vm_id, volume_id)

    def _release_scratch_volume(self, vm_id: str, volume_id: str) -> None:
        steps = (
            ("detach", lambda: self.volumes.detach(vm_id, volume_id, force=True)),
            ("delete", lambda: self.volumes.delete(volume_id)),
        )
        for step, action in steps:
            try:
                action()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "scratch volume cleanup failed step=%s volume=%s error=%s",
                    step,
                    volume_id,
                    exc,
                )

    def _copy_image(self, image_path: str, device_path: str) -> None:
        command = ["dd", f"if={image_path}", f"of={device_path}", "bs=1M", "oflag=direct"]
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as exc:
            raise CloudError(
                f"Failed to copy stemcell image to {device_path}: {exc.stderr.strip()}"
            ) from exc

    def _register(self, snapshot_id: str, props: StemcellProps) -> str:
        params: dict[str, Any] = {
            "Name": f"BOSH-{uuid.uuid4()}",
            "Architecture": props.architecture,
            "VirtualizationType": props.virtualization_type,
            "RootDeviceName": props.root_device_name,
            "BlockDeviceMappings": [
                {
                    "DeviceName": props.root_device_name,
                    "Ebs": {"SnapshotId": snapshot_id, "DeleteOnTermination": True},
                },
                {"DeviceName": EPHEMERAL_DEVICE_NAME, "VirtualName": "ephemeral0"},
            ],
        }
        if props.virtualization_type == "hvm":
            params["SriovNetSupport"] = "simple"
            params["EnaSupport"] = True
        elif props.kernel_id:
            params["KernelId"] = props.kernel_id
        try:
            image_id = self.ec2.register_image(**params)["ImageId"]
        except ClientError as exc:
            raise provider_error(exc) from exc
        logger.info("registered image %s from snapshot %s", image_id, snapshot_id)
        self.waiter.for_image(self.ec2, image_id, "available")
        return image_id
