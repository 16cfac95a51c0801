import logging

from botocore.exceptions import ClientError

from aws_cpi.clients.aws import error_code, provider_error
from aws_cpi.errors import CloudError


logger = logging.getLogger(__name__)


class TargetGroupNotFound(CloudError):
    def __init__(self, group_name: str):
        self.group_name = group_name
        super().__init__(f"Could not find target group '{group_name}'")


class LoadBalancerRegistrar:
    def __init__(self, elbv2, elb):
        self.elbv2 = elbv2
        self.elb = elb

    def resolve_target_groups(self, names: list[str]) -> dict[str, str]:
        if not names:
            return {}
        try:
            response = self.elbv2.describe_target_groups(Names=list(names))
        except ClientError as exc:
            if error_code(exc) == "TargetGroupNotFound":
                raise TargetGroupNotFound(", ".join(names)) from exc
            raise provider_error(exc) from exc
        arns = {
            group["TargetGroupName"]: group["TargetGroupArn"]
            for group in response.get("TargetGroups", [])
        }
        for name in names:
            if name not in arns:
                raise TargetGroupNotFound(name)
        return arns

    def register_target_group(self, arn: str, instance_id: str) -> None:
        try:
            self.elbv2.register_targets(
                TargetGroupArn=arn, Targets=[{"Id": instance_id}]
            )
        except ClientError as exc:
            raise provider_error(exc) from exc
        logger.info("registered instance %s with target group %s", instance_id, arn)

    def register_classic(self, elb_name: str, instance_id: str) -> None:
        try:
            self.elb.register_instances_with_load_balancer(
                LoadBalancerName=elb_name, Instances=[{"InstanceId": instance_id}]
            )
        except ClientError as exc:
            raise provider_error(exc) from exc
        logger.info(
            "registered instance %s with load balancer %s", instance_id, elb_name
        )
