import subprocess
from pathlib import Path
from typing import Any, cast

import httpx
import pytest

from aws_cpi.errors import CloudError, ImageNotFound
from aws_cpi.schemas import parse_stemcell_props
from aws_cpi.services.instances import InstanceManager
from aws_cpi.services.resource_wait import ResourceWaiter
from aws_cpi.services.stemcells import StemcellManager
from aws_cpi.services.tags import TagApplier
from aws_cpi.services.volumes import VolumeLifecycleManager
from fake_aws import FakeEC2, client_error, no_sleep


def metadata_client(instance_id: str = "i-current", status: int = 200) -> httpx.Client:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status_code=status, text=instance_id, request=request)
    )
    return httpx.Client(transport=transport)


def stemcell_manager(ec2: FakeEC2, client: httpx.Client | None = None) -> StemcellManager:
    fake = cast(Any, ec2)
    waiter = ResourceWaiter(sleep=no_sleep)
    volumes = VolumeLifecycleManager(
        fake, waiter, TagApplier(fake, sleep=no_sleep), sleep=no_sleep
    )
    return StemcellManager(
        fake,
        waiter,
        volumes,
        InstanceManager(fake, waiter),
        region="us-east-1",
        metadata_client=client or metadata_client(),
    )


def test_find_image_heavy_and_light():
    ec2 = FakeEC2()
    ec2.add_image("ami-1", root_device_name="/dev/sda1", snapshot_ids=("snap-1",))
    manager = stemcell_manager(ec2)

    heavy = manager.find_image("ami-1")
    assert heavy.root_device_name == "/dev/sda1"
    assert heavy.snapshot_ids == ["snap-1"]
    assert not heavy.light

    assert manager.find_image("ami-1 light").light


def test_find_missing_image():
    with pytest.raises(ImageNotFound):
        stemcell_manager(FakeEC2()).find_image("ami-missing")


def test_delete_heavy_stemcell_removes_snapshots():
    ec2 = FakeEC2()
    snapshot_id = ec2.create_snapshot(VolumeId="vol-1")["SnapshotId"]
    ec2.add_image("ami-1", snapshot_ids=(snapshot_id,))
    manager = stemcell_manager(ec2)
    manager.delete(manager.find_image("ami-1"))
    assert "ami-1" not in ec2.images
    assert snapshot_id not in ec2.snapshots


def test_delete_light_stemcell_keeps_ami():
    ec2 = FakeEC2()
    ec2.add_image("ami-1")
    manager = stemcell_manager(ec2)
    manager.delete(manager.find_image("ami-1 light"))
    assert "ami-1" in ec2.images
    assert ec2.called("deregister_image") == []


def test_create_light_returns_light_id():
    ec2 = FakeEC2()
    ec2.add_image("ami-east")
    props = parse_stemcell_props({"ami": {"us-east-1": "ami-east", "eu-west-1": "ami-eu"}})
    assert stemcell_manager(ec2).create_light(props) == "ami-east light"


def test_create_light_encrypted_copies_image():
    ec2 = FakeEC2()
    ec2.add_image("ami-east")
    props = parse_stemcell_props(
        {"ami": {"us-east-1": "ami-east"}, "encrypted": True, "kms_key_arn": "arn:kms"}
    )
    image_id = stemcell_manager(ec2).create_light(props)
    assert image_id in ec2.images
    assert ec2.called("copy_image") == [
        {
            "SourceRegion": "us-east-1",
            "SourceImageId": "ami-east",
            "Name": "Copied from SourceAMI ami-east",
            "Encrypted": True,
            "KmsKeyId": "arn:kms",
        }
    ]


def test_create_light_without_regional_ami():
    props = parse_stemcell_props({"ami": {"eu-west-1": "ami-eu"}})
    with pytest.raises(CloudError):
        stemcell_manager(FakeEC2()).create_light(props)


def test_create_from_image_registers_and_cleans_up(monkeypatch):
    ec2 = FakeEC2()
    ec2.add_instance("i-current")
    commands: list[list[str]] = []

    def fake_run(command, **_kwargs):
        commands.append(command)
        return subprocess.CompletedProcess(command, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    monkeypatch.setattr(Path, "is_block_device", lambda self: str(self) == "/dev/xvdf")

    props = parse_stemcell_props({"root_device_name": "/dev/xvda", "disk": 3072})
    image_id = stemcell_manager(ec2).create_from_image("/tmp/root.img", props)

    assert image_id in ec2.images
    assert commands[0][:3] == ["dd", "if=/tmp/root.img", "of=/dev/xvdf"]
    registered = ec2.called("register_image")[0]
    assert registered["RootDeviceName"] == "/dev/xvda"
    assert registered["EnaSupport"] is True
    assert ec2.called("create_volume")[0]["Size"] == 3
    assert ec2.called("detach_volume")[0]["Force"] is True
    assert len(ec2.volumes) == 0


def test_create_from_image_cleans_up_when_copy_fails(monkeypatch):
    ec2 = FakeEC2()
    ec2.add_instance("i-current")

    def failing_run(command, **_kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="no space left")

    monkeypatch.setattr(subprocess, "run", failing_run)
    monkeypatch.setattr(Path, "is_block_device", lambda self: True)

    props = parse_stemcell_props({})
    with pytest.raises(CloudError, match="no space left"):
        stemcell_manager(ec2).create_from_image("/tmp/root.img", props)
    assert len(ec2.volumes) == 0
    assert ec2.called("register_image") == []


def test_copy_error_survives_failed_volume_cleanup(monkeypatch, caplog):
    ec2 = FakeEC2()
    ec2.add_instance("i-current")
    ec2.fail("delete_volume", client_error("UnauthorizedOperation", "DeleteVolume"))

    def failing_run(command, **_kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="no space left")

    monkeypatch.setattr(subprocess, "run", failing_run)
    monkeypatch.setattr(Path, "is_block_device", lambda self: True)

    props = parse_stemcell_props({})
    with pytest.raises(CloudError, match="no space left"):
        stemcell_manager(ec2).create_from_image("/tmp/root.img", props)
    assert len(ec2.called("delete_volume")) == 1
    assert "scratch volume cleanup failed" in caplog.text


def test_metadata_endpoint_error():
    manager = stemcell_manager(FakeEC2(), metadata_client(status=500))
    with pytest.raises(CloudError, match="HTTP 500"):
        manager.current_vm_id()


def test_current_vm_must_exist():
    manager = stemcell_manager(FakeEC2(), metadata_client("i-elsewhere"))
    with pytest.raises(CloudError, match="Could not locate the current VM"):
        manager.create_from_image("/tmp/root.img", parse_stemcell_props({}))
