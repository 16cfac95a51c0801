import logging
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from aws_cpi.clients.aws import error_code, is_not_found, provider_error
from aws_cpi.errors import CloudError, DeviceNotFound
from aws_cpi.metrics import metrics
from aws_cpi.services.resource_wait import ResourceWaiter, sleep_schedule
from aws_cpi.services.tags import TagApplier


logger = logging.getLogger(__name__)

DEVICE_LETTERS = "fghijklmnop"
DEVICE_POLL_TIMEOUT = 60
DELETE_TRIES = 20
SNAPSHOT_TAG_KEYS = ("agent_id", "instance_id", "director_name", "director_uuid")
_DEVICE_RE = re.compile(r"^/dev/(?:sd|xvd)([a-z])\d*$")


def candidate_device_names(used: set[str]) -> list[str]:
    used_letters = set()
    for name in used:
        match = _DEVICE_RE.match(name)
        if match:
            used_letters.add(match.group(1))
    return [
        f"/dev/sd{letter}" for letter in DEVICE_LETTERS if letter not in used_letters
    ]


def snapshot_name(metadata: dict[str, Any], device: str | None) -> str:
    parts = [str(metadata.get(key)) for key in ("deployment", "job", "index")]
    if device:
        parts.append(device.split("/")[-1])
    return "/".join(parts)


def _without_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class VolumeLifecycleManager:
    def __init__(
        self,
        ec2,
        waiter: ResourceWaiter,
        tagger: TagApplier,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.ec2 = ec2
        self.waiter = waiter
        self.tagger = tagger
        self.sleep = sleep

    def create(self, config: dict[str, Any]) -> str:
        try:
            response = self.ec2.create_volume(**_without_none(config))
        except ClientError as exc:
            raise provider_error(exc) from exc
        volume_id = response["VolumeId"]
        logger.info("creating volume %s", volume_id)
        self.waiter.for_volume(self.ec2, volume_id, "available")
        metrics.inc("volumes_created_total")
        return volume_id

    def exists(self, volume_id: str) -> bool:
        try:
            response = self.ec2.describe_volumes(VolumeIds=[volume_id])
        except ClientError as exc:
            if is_not_found(exc):
                return False
            raise provider_error(exc) from exc
        return bool(response.get("Volumes"))

    def describe(self, volume_id: str) -> dict[str, Any]:
        try:
            response = self.ec2.describe_volumes(VolumeIds=[volume_id])
        except ClientError as exc:
            raise provider_error(exc) from exc
        volumes = response.get("Volumes", [])
        if not volumes:
            raise CloudError(f"volume {volume_id} not found")
        return volumes[0]

    def attach(self, instance_id: str, volume_id: str) -> str:
        volume = self.describe(volume_id)
        for attachment in volume.get("Attachments", []):
            if attachment.get("InstanceId") != instance_id:
                continue
            if attachment.get("State") in {"attaching", "attached"}:
                device = attachment["Device"]
                logger.info(
                    "volume %s already attached to %s at %s",
                    volume_id,
                    instance_id,
                    device,
                )
                self.waiter.for_attachment(self.ec2, volume_id, instance_id, "attached")
                return device

        used = self._used_device_names(instance_id)
        for device in candidate_device_names(used):
            try:
                self.ec2.attach_volume(
                    InstanceId=instance_id, VolumeId=volume_id, Device=device
                )
            except ClientError as exc:
                message = exc.response.get("Error", {}).get("Message", "")
                in_use = "already in use" in message
                if error_code(exc) == "InvalidParameterValue" and in_use:
                    logger.warning(
                        "device %s already in use on %s, trying next",
                        device,
                        instance_id,
                    )
                    continue
                raise provider_error(exc) from exc
            logger.info("attaching %s to %s at %s", volume_id, instance_id, device)
            self.waiter.for_attachment(self.ec2, volume_id, instance_id, "attached")
            metrics.inc("disk_attach_total")
            return device
        raise CloudError(f"instance {instance_id} has too many disks attached")

    def detach(self, instance_id: str, volume_id: str, force: bool = False) -> None:
        try:
            self.ec2.detach_volume(
                VolumeId=volume_id, InstanceId=instance_id, Force=force
            )
        except ClientError as exc:
            if is_not_found(exc) or error_code(exc) == "IncorrectState":
                logger.info(
                    "volume %s is not attached to %s: %s", volume_id, instance_id, exc
                )
                return
            raise provider_error(exc) from exc
        self.waiter.for_attachment(self.ec2, volume_id, instance_id, "detached")
        metrics.inc("disk_detach_total")

    def delete(self, volume_id: str, fast_path: bool = False) -> None:
        for attempt in range(1, DELETE_TRIES + 1):
            try:
                self.ec2.delete_volume(VolumeId=volume_id)
                break
            except ClientError as exc:
                if is_not_found(exc):
                    logger.info("volume %s not found, already deleted", volume_id)
                    return
                if error_code(exc) == "VolumeInUse" and attempt < DELETE_TRIES:
                    seconds = sleep_schedule(attempt - 1, 5)
                    logger.debug(
                        "volume %s still in use, retrying in %s seconds",
                        volume_id,
                        seconds,
                    )
                    self.sleep(seconds)
                    continue
                raise provider_error(exc) from exc
        logger.info("deleting volume %s", volume_id)
        if fast_path:
            return
        self.waiter.for_volume(self.ec2, volume_id, "deleted")

    def create_snapshot(
        self, volume_id: str, description: str = "", tags: dict[str, Any] | None = None
    ) -> str:
        snapshot_id = self.issue_snapshot(volume_id, description)
        self.complete_snapshot(snapshot_id, tags)
        return snapshot_id

    def issue_snapshot(self, volume_id: str, description: str = "") -> str:
        try:
            response = self.ec2.create_snapshot(
                VolumeId=volume_id, Description=description
            )
        except ClientError as exc:
            raise provider_error(exc) from exc
        return response["SnapshotId"]

    def complete_snapshot(
        self, snapshot_id: str, tags: dict[str, Any] | None = None
    ) -> None:
        self.waiter.for_snapshot(self.ec2, snapshot_id, "completed")
        if tags:
            self.tagger.apply(snapshot_id, tags)

    def snapshot(self, volume_id: str, metadata: dict[str, Any]) -> str:
        metadata = {str(key): value for key, value in metadata.items()}
        volume = self.describe(volume_id)
        devices = [
            a["Device"] for a in volume.get("Attachments", []) if a.get("Device")
        ]
        device = devices[0] if devices else None

        name = snapshot_name(metadata, device)
        tags = {key: metadata.get(key) for key in SNAPSHOT_TAG_KEYS}
        if device:
            tags["device"] = device
        tags["Name"] = name

        snapshot_id = self.create_snapshot(volume_id, name, tags)
        logger.info("snapshot %s of volume %s created", snapshot_id, volume_id)
        metrics.inc("snapshots_created_total")
        return snapshot_id

    def delete_snapshot(self, snapshot_id: str) -> None:
        try:
            self.ec2.delete_snapshot(SnapshotId=snapshot_id)
        except ClientError as exc:
            if is_not_found(exc):
                logger.info("snapshot %s not found", snapshot_id)
                return
            raise provider_error(exc) from exc
        logger.info("snapshot %s deleted", snapshot_id)

    def find_device_path(
        self, device_name: str, timeout: int = DEVICE_POLL_TIMEOUT
    ) -> str:
        xvd_name = re.sub(r"^/dev/sd", "/dev/xvd", device_name)
        for _ in range(timeout):
            if Path(device_name).is_block_device():
                return device_name
            if Path(xvd_name).is_block_device():
                return xvd_name
            self.sleep(1)
        raise DeviceNotFound(device_name)

    def _used_device_names(self, instance_id: str) -> set[str]:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            raise provider_error(exc) from exc
        used: set[str] = set()
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                for mapping in instance.get("BlockDeviceMappings", []):
                    used.add(mapping["DeviceName"])
        return used
