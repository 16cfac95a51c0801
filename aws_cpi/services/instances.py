import base64
import logging
from typing import Any

from botocore.exceptions import ClientError

from aws_cpi.clients.aws import is_not_found, provider_error
from aws_cpi.errors import InvalidConfiguration
from aws_cpi.schemas import NetworkProps, VmCloudProps
from aws_cpi.services.resource_wait import ResourceWaiter


logger = logging.getLogger(__name__)


class InstanceManager:
    def __init__(self, ec2, waiter: ResourceWaiter):
        self.ec2 = ec2
        self.waiter = waiter

    def launch_params(
        self,
        image_id: str,
        vm_props: VmCloudProps,
        network_props: NetworkProps,
        availability_zone: str | None,
        default_security_groups: list[str],
        block_device_mappings: list[dict[str, Any]],
        user_data: bytes | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "ImageId": image_id,
            "MinCount": 1,
            "MaxCount": 1,
            "BlockDeviceMappings": block_device_mappings,
        }
        if vm_props.instance_type:
            params["InstanceType"] = vm_props.instance_type
        if vm_props.key_name:
            params["KeyName"] = vm_props.key_name

        security_groups = (
            network_props.security_groups()
            or vm_props.security_groups
            or default_security_groups
        )
        if security_groups:
            params["SecurityGroupIds"] = security_groups

        network = network_props.instance_network
        if network is not None:
            if network.subnet:
                params["SubnetId"] = network.subnet
            if network.type == "manual" and network.ip:
                params["PrivateIpAddress"] = network.ip

        placement: dict[str, str] = {}
        if availability_zone:
            placement["AvailabilityZone"] = availability_zone
        if vm_props.placement_group:
            placement["GroupName"] = vm_props.placement_group
        if vm_props.tenancy:
            placement["Tenancy"] = vm_props.tenancy
        if placement:
            params["Placement"] = placement

        if vm_props.iam_instance_profile:
            params["IamInstanceProfile"] = {"Name": vm_props.iam_instance_profile}
        if user_data:
            # botocore base64-encodes UserData for RunInstances itself
            params["UserData"] = base64.b64decode(user_data).decode("utf-8")
        return params

    def create(self, params: dict[str, Any], vm_props: VmCloudProps) -> str:
        try:
            response = self.ec2.run_instances(**params)
        except ClientError as exc:
            raise provider_error(exc) from exc
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info("launched instance %s image=%s", instance_id, params["ImageId"])
        return instance_id

    def wait_running(self, instance_id: str, vm_props: VmCloudProps) -> None:
        self.waiter.for_instance(self.ec2, instance_id, "running")
        if not vm_props.source_dest_check:
            try:
                self.ec2.modify_instance_attribute(
                    InstanceId=instance_id, SourceDestCheck={"Value": False}
                )
            except ClientError as exc:
                raise provider_error(exc) from exc

    def terminate(self, instance_id: str, fast_path: bool = False) -> None:
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            if is_not_found(exc):
                logger.info("instance %s not found, already terminated", instance_id)
                return
            raise provider_error(exc) from exc
        logger.info("terminating instance %s fast_path=%s", instance_id, fast_path)
        if fast_path:
            return
        self.waiter.for_instance(self.ec2, instance_id, "terminated")

    def reboot(self, instance_id: str) -> None:
        try:
            self.ec2.reboot_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            raise provider_error(exc) from exc

    def describe(self, instance_id: str) -> dict[str, Any] | None:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            if is_not_found(exc):
                return None
            raise provider_error(exc) from exc
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def exists(self, instance_id: str) -> bool:
        instance = self.describe(instance_id)
        return instance is not None and instance["State"]["Name"] != "terminated"

    def availability_zone(self, instance_id: str) -> str | None:
        instance = self.describe(instance_id)
        if instance is None:
            return None
        return instance.get("Placement", {}).get("AvailabilityZone")

    def block_device_volume_ids(self, instance_id: str) -> list[str]:
        instance = self.describe(instance_id) or {}
        return [
            mapping["Ebs"]["VolumeId"]
            for mapping in instance.get("BlockDeviceMappings", [])
            if mapping.get("Ebs")
        ]


class AvailabilityZoneSelector:
    def __init__(self, ec2, instances: InstanceManager):
        self.ec2 = ec2
        self.instances = instances

    def select_availability_zone(self, instance_id: str | None) -> str | None:
        if instance_id:
            return self.instances.availability_zone(instance_id)
        return None

    def common_availability_zone(
        self,
        volume_ids: list[str],
        requested: str | None,
        subnet_zone: str | None = None,
    ) -> str | None:
        zones = self._volume_zones(volume_ids)
        candidates = [z for z in [*zones, requested, subnet_zone] if z]
        unique = sorted(set(candidates))
        if len(unique) > 1:
            raise InvalidConfiguration(
                f"can't use multiple availability zones: {', '.join(unique)}"
            )
        return unique[0] if unique else None

    def _volume_zones(self, volume_ids: list[str]) -> list[str]:
        if not volume_ids:
            return []
        try:
            response = self.ec2.describe_volumes(VolumeIds=list(volume_ids))
        except ClientError as exc:
            raise provider_error(exc) from exc
        return [v["AvailabilityZone"] for v in response.get("Volumes", [])]

    def subnet_zone(self, subnet_id: str | None) -> str | None:
        if not subnet_id:
            return None
        try:
            subnets = self.ec2.describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        except ClientError as exc:
            raise provider_error(exc) from exc
        return subnets[0]["AvailabilityZone"] if subnets else None


# (cpu, ram_mb) -> instance type, smallest first
INSTANCE_TYPES: list[tuple[int, int, str]] = [
    (1, 1024, "t2.micro"),
    (1, 2048, "t2.small"),
    (2, 4096, "t2.medium"),
    (2, 8192, "m5.large"),
    (4, 16384, "m5.xlarge"),
    (8, 32768, "m5.2xlarge"),
    (16, 65536, "m5.4xlarge"),
    (32, 131072, "m5.8xlarge"),
    (48, 196608, "m5.12xlarge"),
    (64, 262144, "m5.16xlarge"),
    (96, 393216, "m5.24xlarge"),
]


class InstanceTypeMapper:
    def map(self, vm_properties: dict[str, Any]) -> str:
        cpu = int(vm_properties["cpu"])
        ram = int(vm_properties["ram"])
        for type_cpu, type_ram, name in INSTANCE_TYPES:
            if type_cpu >= cpu and type_ram >= ram:
                return name
        raise InvalidConfiguration(
            f"Unable to meet requested VM requirements: {cpu} CPU, {ram} MB RAM"
        )
