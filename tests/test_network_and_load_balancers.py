from typing import Any, cast

import pytest

from aws_cpi.clients.aws import ProviderContext
from aws_cpi.errors import CloudError, EndpointUnreachable, InvalidConfiguration
from aws_cpi.schemas import parse_network_props
from aws_cpi.services.load_balancers import LoadBalancerRegistrar, TargetGroupNotFound
from aws_cpi.services.network import NetworkConfigurator
from fake_aws import FakeEC2, FakeELB, FakeELBv2, client_error


def test_vip_network_associates_elastic_ip():
    ec2 = FakeEC2()
    ec2.addresses["52.0.0.1"] = "eipalloc-1"
    networks = parse_network_props(
        {"private": {"type": "dynamic"}, "public": {"type": "vip", "ip": "52.0.0.1"}}
    )
    NetworkConfigurator(cast(Any, ec2)).configure(networks, "i-1")
    assert ec2.called("associate_address") == [
        {"AllocationId": "eipalloc-1", "InstanceId": "i-1", "AllowReassociation": True}
    ]


def test_no_vip_network_is_a_no_op():
    ec2 = FakeEC2()
    NetworkConfigurator(cast(Any, ec2)).configure(
        parse_network_props({"private": {"type": "dynamic"}}), "i-1"
    )
    assert ec2.calls == []


def test_vip_network_without_ip_is_invalid():
    networks = parse_network_props({"public": {"type": "vip"}})
    with pytest.raises(InvalidConfiguration):
        NetworkConfigurator(cast(Any, FakeEC2())).configure(networks, "i-1")


def test_unknown_elastic_ip_fails():
    networks = parse_network_props({"public": {"type": "vip", "ip": "52.0.0.9"}})
    with pytest.raises(CloudError):
        NetworkConfigurator(cast(Any, FakeEC2())).configure(networks, "i-1")


def test_target_groups_resolve_and_register():
    elbv2 = FakeELBv2(target_groups={"web": "arn:tg/web"})
    registrar = LoadBalancerRegistrar(elbv2, FakeELB())
    arns = registrar.resolve_target_groups(["web"])
    registrar.register_target_group(arns["web"], "i-1")
    assert elbv2.registered == [("arn:tg/web", "i-1")]


def test_missing_target_group():
    registrar = LoadBalancerRegistrar(FakeELBv2(), FakeELB())
    with pytest.raises(TargetGroupNotFound):
        registrar.resolve_target_groups(["nope"])


def test_classic_load_balancer_registration():
    elb = FakeELB()
    LoadBalancerRegistrar(FakeELBv2(), elb).register_classic("legacy", "i-1")
    assert elb.registered == [("legacy", "i-1")]


def test_unreachable_endpoints_raise_endpoint_unreachable():
    provider = ProviderContext(
        ec2=FakeEC2(), elbv2=FakeELBv2(reachable=False), elb=FakeELB(reachable=False)
    )
    with pytest.raises(EndpointUnreachable) as excinfo:
        provider.alb_accessible()
    assert excinfo.value.ok_to_retry
    with pytest.raises(EndpointUnreachable):
        provider.elb_accessible()


def test_reachable_endpoints_pass():
    provider = ProviderContext(ec2=FakeEC2(), elbv2=FakeELBv2(), elb=FakeELB())
    provider.alb_accessible()
    provider.elb_accessible()


def test_elastic_ip_not_found_error_from_provider():
    ec2 = FakeEC2()
    ec2.fail("describe_addresses", client_error("InvalidAddress.NotFound", "DescribeAddresses"))
    networks = parse_network_props({"public": {"type": "vip", "ip": "52.0.0.9"}})
    with pytest.raises(CloudError, match="Elastic IP with VPC scope not found"):
        NetworkConfigurator(cast(Any, ec2)).configure(networks, "i-1")
