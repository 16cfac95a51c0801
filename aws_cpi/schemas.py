from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aws_cpi.config import Settings
from aws_cpi.errors import InvalidConfiguration


class EphemeralDiskProps(BaseModel):
    size: int = 10240
    type: str | None = None
    iops: int | None = None
    encrypted: bool | None = None
    kms_key_arn: str | None = None
    use_instance_storage: bool = False


class RootDiskProps(BaseModel):
    size: int | None = None
    type: str | None = None
    iops: int | None = None
    device_name: str | None = None


class VmCloudProps(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instance_type: str | None = None
    availability_zone: str | None = None
    key_name: str | None = None
    security_groups: list[str] = Field(default_factory=list)
    iam_instance_profile: str | None = None
    placement_group: str | None = None
    tenancy: str | None = None
    source_dest_check: bool = True
    lb_target_groups: list[str] = Field(default_factory=list)
    elbs: list[str] = Field(default_factory=list)
    ephemeral_disk: EphemeralDiskProps = Field(default_factory=EphemeralDiskProps)
    raw_instance_storage: bool = False
    root_disk: RootDiskProps | None = None

    @property
    def custom_encryption(self) -> bool:
        return bool(self.ephemeral_disk.encrypted and self.ephemeral_disk.kms_key_arn)


class DiskCloudProps(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str | None = None
    iops: int | None = None
    encrypted: bool = False
    kms_key_arn: str | None = None


class Network(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    type: str = "manual"
    ip: str | None = None
    dns: list[str] | None = None
    default: list[str] = Field(default_factory=list)
    cloud_properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def subnet(self) -> str | None:
        return self.cloud_properties.get("subnet")

    @property
    def security_groups(self) -> list[str]:
        return list(self.cloud_properties.get("security_groups") or [])

    def to_agent_spec(self) -> dict[str, Any]:
        return self.model_dump(exclude={"name"}, exclude_unset=True)


class NetworkProps(BaseModel):
    networks: list[Network] = Field(default_factory=list)

    @property
    def vip_network(self) -> Network | None:
        return next((n for n in self.networks if n.type == "vip"), None)

    @property
    def instance_network(self) -> Network | None:
        return next(
            (n for n in self.networks if n.type in {"manual", "dynamic"}), None
        )

    @property
    def dns(self) -> dict[str, list[str]] | None:
        for network in self.networks:
            if network.dns:
                return {"nameserver": network.dns}
        return None

    def security_groups(self) -> list[str]:
        groups: list[str] = []
        for network in self.networks:
            for group in network.security_groups:
                if group not in groups:
                    groups.append(group)
        return groups


class StemcellProps(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    version: str | None = None
    ami: dict[str, str] = Field(default_factory=dict)
    architecture: str = "x86_64"
    root_device_name: str = "/dev/xvda"
    virtualization_type: str = "hvm"
    kernel_id: str | None = None
    disk: int = 2048
    encrypted: bool = False
    kms_key_arn: str | None = None

    @property
    def is_light(self) -> bool:
        return bool(self.ami)

    def region_ami(self, region: str | None) -> str | None:
        return self.ami.get(region or "")

    @property
    def ami_ids(self) -> list[str]:
        return list(self.ami.values())


class CpiRequest(BaseModel):
    method: str
    arguments: list[Any] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    api_version: int | None = None

    @property
    def request_id(self) -> str | None:
        return self.context.get("request_id")

    @property
    def stemcell_api_version(self) -> int:
        vm = self.context.get("vm") or {}
        stemcell = vm.get("stemcell") or {}
        return int(stemcell.get("api_version") or 1)


class CpiError(BaseModel):
    type: str
    message: str
    ok_to_retry: bool = False


class CpiResponse(BaseModel):
    result: Any = None
    error: CpiError | None = None
    log: str = ""


def _validated(model: type[BaseModel], raw: dict | None, what: str):
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        raise InvalidConfiguration(f"invalid {what}: {exc}") from exc


def parse_vm_props(raw: dict | None, settings: Settings) -> VmCloudProps:
    props = _validated(VmCloudProps, raw, "vm cloud properties")
    if props.ephemeral_disk.encrypted is None:
        props.ephemeral_disk.encrypted = settings.encrypted
    if props.ephemeral_disk.encrypted and not props.ephemeral_disk.kms_key_arn:
        props.ephemeral_disk.kms_key_arn = settings.kms_key_arn
    if not props.key_name:
        props.key_name = settings.default_key_name
    if not props.iam_instance_profile:
        props.iam_instance_profile = settings.default_iam_instance_profile
    return props


def parse_disk_props(raw: dict | None, settings: Settings) -> DiskCloudProps:
    merged = {"encrypted": settings.encrypted, "kms_key_arn": settings.kms_key_arn}
    merged.update({k: v for k, v in (raw or {}).items() if v is not None})
    return _validated(DiskCloudProps, merged, "disk cloud properties")


def parse_network_props(raw: dict | None) -> NetworkProps:
    networks = [{"name": name, **(spec or {})} for name, spec in (raw or {}).items()]
    return _validated(NetworkProps, {"networks": networks}, "network spec")


def parse_stemcell_props(raw: dict | None) -> StemcellProps:
    return _validated(StemcellProps, raw, "stemcell properties")
