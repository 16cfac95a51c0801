import base64
import json

import pytest

from aws_cpi.config import Settings
from aws_cpi.errors import UnsupportedProtocolVersion
from aws_cpi.schemas import parse_network_props, parse_vm_props
from aws_cpi.services.agent_settings import AgentConfig, AgentConfigEncoder
from aws_cpi.services.block_devices import BlockDeviceMapper


NETWORKS = {
    "private": {
        "type": "manual",
        "ip": "10.0.0.5",
        "dns": ["10.0.0.2"],
        "default": ["dns", "gateway"],
        "cloud_properties": {"subnet": "subnet-1"},
    },
    "public": {"type": "vip", "ip": "52.0.0.1"},
}


def build_config(**overrides) -> AgentConfig:
    props = parse_vm_props(
        {"instance_type": "i3.4xlarge", "raw_instance_storage": True},
        Settings(_env_file=None),
    )
    layout = BlockDeviceMapper().compute("/dev/xvda", props)
    kwargs = {
        "agent_id": "agent-1",
        "network_props": parse_network_props(NETWORKS),
        "root_device_name": "/dev/xvda",
        "disk_info": layout.agent_disk_info,
        "environment": {"bosh": {"password": "secret"}},
        "extra": {"mbus": "nats://mbus", "ntp": ["0.pool.ntp.org"]},
        "registry_endpoint": "http://registry:25777",
    }
    kwargs.update(overrides)
    return AgentConfig.build(**kwargs)


def decode(encoded: bytes) -> dict:
    return json.loads(base64.b64decode(encoded))


def test_agent_settings_document_layout():
    settings = build_config().agent_settings()
    assert settings["vm"]["name"].startswith("vm-")
    assert settings["agent_id"] == "agent-1"
    assert settings["disks"] == {
        "system": "/dev/xvda",
        "persistent": {},
        "ephemeral": "/dev/sdb",
        "raw_ephemeral": [{"path": "/dev/xvdba"}, {"path": "/dev/xvdbb"}],
    }
    assert settings["env"] == {"bosh": {"password": "secret"}}
    assert settings["mbus"] == "nats://mbus"
    assert settings["ntp"] == ["0.pool.ntp.org"]


def test_use_dhcp_set_for_all_but_vip_networks():
    networks = build_config().agent_settings()["networks"]
    assert networks["private"]["use_dhcp"] is True
    assert networks["private"]["ip"] == "10.0.0.5"
    assert networks["private"]["cloud_properties"] == {"subnet": "subnet-1"}
    assert "use_dhcp" not in networks["public"]


def test_version_one_encodes_bootstrap_document():
    document = decode(AgentConfigEncoder().encode(1, build_config()))
    assert document["registry"] == {"endpoint": "http://registry:25777"}
    assert document["dns"] == {"nameserver": ["10.0.0.2"]}
    assert set(document["networks"]) == {"private", "public"}
    assert "agent_id" not in document


def test_version_two_encodes_full_settings_inline():
    document = decode(AgentConfigEncoder().encode(2, build_config()))
    assert document["agent_id"] == "agent-1"
    assert document["registry"] == {"endpoint": "http://registry:25777"}
    assert document["disks"]["ephemeral"] == "/dev/sdb"


def test_unsupported_version_rejected():
    with pytest.raises(UnsupportedProtocolVersion):
        AgentConfigEncoder().encode(3, build_config())


def test_ephemeral_given_as_single_entry_list_flattens_to_path():
    config = build_config(disk_info={"ephemeral": [{"path": "/dev/nvme1n1"}]})
    assert config.disks()["ephemeral"] == "/dev/nvme1n1"


def test_disk_hints_exclude_persistent():
    hints = build_config().disk_hints()
    assert "persistent" not in hints
    assert hints["system"] == "/dev/xvda"
