from aws_cpi.services.volume_properties import VolumeSpec, mib_to_gib


def test_mib_to_gib_rounds_up():
    assert mib_to_gib(1024) == 1
    assert mib_to_gib(1025) == 2
    assert mib_to_gib(10240) == 10


def test_ephemeral_disk_config_defaults():
    config = VolumeSpec(size_mb=4096).ephemeral_disk_config()
    assert config == {
        "DeviceName": "/dev/sdb",
        "Ebs": {"VolumeSize": 4, "VolumeType": "gp2", "DeleteOnTermination": True},
    }


def test_ephemeral_disk_config_with_iops_and_encryption():
    ebs = VolumeSpec(
        size_mb=2048, type="io1", iops=500, encrypted=True, kms_key_arn="arn:kms"
    ).ephemeral_disk_config()["Ebs"]
    assert ebs["VolumeType"] == "io1"
    assert ebs["Iops"] == 500
    assert ebs["Encrypted"] is True
    assert ebs["KmsKeyId"] == "arn:kms"


def test_persistent_disk_config():
    tags = [{"Key": "owner", "Value": "bosh"}]
    config = VolumeSpec(
        size_mb=2048, availability_zone="us-east-1a", tags=tags
    ).persistent_disk_config()
    assert config == {
        "Size": 2,
        "AvailabilityZone": "us-east-1a",
        "VolumeType": "gp2",
        "Encrypted": False,
        "TagSpecifications": [{"ResourceType": "volume", "Tags": tags}],
    }


def test_root_disk_config_without_size_keeps_image_size():
    config = VolumeSpec(root_device_name="/dev/sda1").root_disk_config()
    assert config == {
        "DeviceName": "/dev/sda1",
        "Ebs": {"VolumeType": "gp2", "DeleteOnTermination": True},
    }


def test_root_disk_config_defaults_device_name():
    config = VolumeSpec(size_mb=30720, type="gp3").root_disk_config()
    assert config["DeviceName"] == "/dev/xvda"
    assert config["Ebs"]["VolumeSize"] == 30
