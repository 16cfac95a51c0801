import logging

from botocore.exceptions import ClientError

from aws_cpi.clients.aws import is_not_found, provider_error
from aws_cpi.errors import CloudError, InvalidConfiguration
from aws_cpi.schemas import NetworkProps


logger = logging.getLogger(__name__)


class NetworkConfigurator:
    def __init__(self, ec2):
        self.ec2 = ec2

    def configure(self, network_props: NetworkProps, instance_id: str) -> None:
        vip = network_props.vip_network
        if vip is None:
            logger.debug("no vip network for instance %s", instance_id)
            return
        if not vip.ip:
            raise InvalidConfiguration(f"No IP provided for vip network '{vip.name}'")
        allocation_id = self._allocation_id(vip.ip)
        logger.info("associating elastic ip %s with instance %s", vip.ip, instance_id)
        try:
            self.ec2.associate_address(
                AllocationId=allocation_id,
                InstanceId=instance_id,
                AllowReassociation=True,
            )
        except ClientError as exc:
            raise provider_error(exc) from exc

    def _allocation_id(self, public_ip: str) -> str:
        try:
            addresses = self.ec2.describe_addresses(PublicIps=[public_ip]).get(
                "Addresses", []
            )
        except ClientError as exc:
            if not is_not_found(exc):
                raise provider_error(exc) from exc
            addresses = []
        if not addresses or not addresses[0].get("AllocationId"):
            raise CloudError(
                f"Elastic IP with VPC scope not found with address '{public_ip}'"
            )
        return addresses[0]["AllocationId"]
