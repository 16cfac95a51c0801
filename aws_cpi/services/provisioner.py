"""VM creation as a sequence of stages with explicit compensations.

Every stage that leaves something behind in the cloud registers how to undo
it. ``on_failure`` actions run (newest first) only when a later stage
fails; ``always`` actions run afterwards in every case. The temporary
encrypted snapshot used as the ephemeral disk source is an ``always``
action, so it is deleted whether or not the VM came up.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aws_cpi.clients.aws import ProviderContext
from aws_cpi.clients.registry import RegistryClient
from aws_cpi.config import Settings
from aws_cpi.errors import CloudError, InvalidConfiguration
from aws_cpi.metrics import metrics
from aws_cpi.schemas import NetworkProps, VmCloudProps
from aws_cpi.services.agent_settings import AgentConfig, AgentConfigEncoder
from aws_cpi.services.block_devices import BlockDeviceMapper
from aws_cpi.services.instances import AvailabilityZoneSelector, InstanceManager
from aws_cpi.services.load_balancers import LoadBalancerRegistrar
from aws_cpi.services.network import NetworkConfigurator
from aws_cpi.services.stemcells import StemcellManager
from aws_cpi.services.volume_properties import VolumeSpec
from aws_cpi.services.volumes import VolumeLifecycleManager
from aws_cpi.state_machine import ProvisioningStage, can_transition


logger = logging.getLogger(__name__)

TEMP_VOLUME_SIZE_MB = 1024
TEMP_TAG_KEY = "ephemeral_disk_agent_id"


class CompensationStack:
    def __init__(self) -> None:
        self._on_failure: list[tuple[str, Callable[[], Any]]] = []
        self._always: list[tuple[str, Callable[[], Any]]] = []

    def on_failure(self, description: str, action: Callable[[], Any]) -> None:
        self._on_failure.append((description, action))

    def always(self, description: str, action: Callable[[], Any]) -> None:
        self._always.append((description, action))

    def unwind(self, failed: bool) -> list[Exception]:
        actions = list(reversed(self._always))
        if failed:
            actions = list(reversed(self._on_failure)) + actions
        self._on_failure.clear()
        self._always.clear()
        errors: list[Exception] = []
        for description, action in actions:
            logger.info("compensation: %s", description)
            try:
                action()
            except Exception as exc:  # noqa: BLE001
                logger.error("compensation failed: %s error=%s", description, exc)
                errors.append(exc)
        return errors


@dataclass
class ProvisioningContext:
    agent_id: str
    stage: ProvisioningStage = ProvisioningStage.PREFLIGHT
    temp_snapshot_id: str | None = None
    instance_id: str | None = None
    compensations: CompensationStack = field(default_factory=CompensationStack)

    def advance(self, target: ProvisioningStage) -> None:
        if not can_transition(self.stage.value, target.value):
            raise CloudError(
                f"invalid provisioning transition {self.stage.value} -> {target.value}"
            )
        logger.debug(
            "provisioning agent_id=%s stage=%s -> %s",
            self.agent_id,
            self.stage.value,
            target.value,
        )
        self.stage = target


@dataclass
class VmRequest:
    agent_id: str
    stemcell_id: str
    vm_props: VmCloudProps
    network_props: NetworkProps
    disk_locality: list[str] = field(default_factory=list)
    environment: dict[str, Any] | None = None
    stemcell_api_version: int = 1


@dataclass
class ProvisioningResult:
    instance_id: str
    agent_config: AgentConfig


class VmProvisioner:
    def __init__(
        self,
        *,
        settings: Settings,
        provider: ProviderContext,
        stemcells: StemcellManager,
        instances: InstanceManager,
        volumes: VolumeLifecycleManager,
        az_selector: AvailabilityZoneSelector,
        load_balancers: LoadBalancerRegistrar,
        network: NetworkConfigurator,
        registry: RegistryClient | None = None,
        mapper: BlockDeviceMapper | None = None,
        encoder: AgentConfigEncoder | None = None,
    ):
        self.settings = settings
        self.provider = provider
        self.stemcells = stemcells
        self.instances = instances
        self.volumes = volumes
        self.az_selector = az_selector
        self.load_balancers = load_balancers
        self.network = network
        self.registry = registry
        self.mapper = mapper or BlockDeviceMapper()
        self.encoder = encoder or AgentConfigEncoder()

    def create_vm(self, request: VmRequest) -> ProvisioningResult:
        context = ProvisioningContext(agent_id=request.agent_id)
        try:
            result = self._run(context, request)
        except Exception as exc:  # noqa: BLE001
            self._fail(context, exc)
            raise
        context.compensations.unwind(failed=False)
        metrics.inc("vm_create_total")
        logger.info(
            "created instance %s for agent_id=%s", result.instance_id, request.agent_id
        )
        return result

    def _fail(self, context: ProvisioningContext, exc: Exception) -> None:
        logger.error(
            "failed to create instance agent_id=%s stage=%s error=%s",
            context.agent_id,
            context.stage.value,
            exc,
        )
        had_instance = context.instance_id is not None
        context.compensations.unwind(failed=True)
        if had_instance:
            context.advance(ProvisioningStage.ROLLED_BACK)
            metrics.inc("vm_rollback_total")
        context.advance(ProvisioningStage.FAILED)
        metrics.inc("vm_create_failed_total")

    def _run(
        self, context: ProvisioningContext, request: VmRequest
    ) -> ProvisioningResult:
        vm_props = request.vm_props
        target_group_arns = self._preflight(request)

        context.advance(ProvisioningStage.RESOLVE_IMAGE)
        image = self.stemcells.find_image(request.stemcell_id)

        if vm_props.custom_encryption:
            context.advance(ProvisioningStage.STAGE_SNAPSHOT)
            context.temp_snapshot_id = self._temporary_snapshot(context, request)

        context.advance(ProvisioningStage.MAP_DEVICES)
        layout = self.mapper.compute(
            image.root_device_name, vm_props, context.temp_snapshot_id
        )
        agent_config = AgentConfig.build(
            agent_id=request.agent_id,
            network_props=request.network_props,
            root_device_name=image.root_device_name,
            disk_info=layout.agent_disk_info,
            environment=request.environment,
            extra=self.settings.agent,
            registry_endpoint=self.settings.registry_endpoint,
        )
        settings_version = 2 if request.stemcell_api_version >= 2 else 1
        user_data = self.encoder.encode(settings_version, agent_config)

        context.advance(ProvisioningStage.LAUNCH)
        network = request.network_props.instance_network
        availability_zone = self.az_selector.common_availability_zone(
            list(request.disk_locality or []),
            vm_props.availability_zone,
            self.az_selector.subnet_zone(network.subnet if network else None),
        )
        params = self.instances.launch_params(
            image.image_id,
            vm_props,
            request.network_props,
            availability_zone,
            self.settings.default_security_groups,
            layout.mappings,
            user_data,
        )
        instance_id = self.instances.create(params, vm_props)
        context.instance_id = instance_id
        fast_path = self.settings.fast_path_delete
        context.compensations.on_failure(
            f"terminate instance {instance_id}",
            lambda: self.instances.terminate(instance_id, fast_path),
        )
        self.instances.wait_running(instance_id, vm_props)

        context.advance(ProvisioningStage.REGISTER_LB)
        for name in vm_props.lb_target_groups:
            self.load_balancers.register_target_group(target_group_arns[name], instance_id)
        for name in vm_props.elbs:
            self.load_balancers.register_classic(name, instance_id)

        context.advance(ProvisioningStage.CONFIGURE_NETWORK)
        self.network.configure(request.network_props, instance_id)

        context.advance(ProvisioningStage.PUSH_AGENT_CONFIG)
        if settings_version == 1 and self.registry is not None:
            self.registry.update_settings(instance_id, agent_config.agent_settings())

        context.advance(ProvisioningStage.DONE)
        return ProvisioningResult(instance_id=instance_id, agent_config=agent_config)

    def _preflight(self, request: VmRequest) -> dict[str, str]:
        vm_props = request.vm_props
        if request.stemcell_api_version < 2 and self.registry is None:
            raise InvalidConfiguration(
                "stemcell api_version 1 requires a registry, "
                "missing configuration parameters > registry:endpoint"
            )
        arns: dict[str, str] = {}
        if vm_props.lb_target_groups:
            self.provider.alb_accessible()
            arns = self.load_balancers.resolve_target_groups(vm_props.lb_target_groups)
        if vm_props.elbs:
            self.provider.elb_accessible()
        return arns

    def _temporary_snapshot(
        self, context: ProvisioningContext, request: VmRequest
    ) -> str:
        disk = request.vm_props.ephemeral_disk
        config = VolumeSpec(
            size_mb=TEMP_VOLUME_SIZE_MB,
            type=disk.type,
            iops=disk.iops,
            availability_zone=request.vm_props.availability_zone,
            encrypted=bool(disk.encrypted),
            kms_key_arn=disk.kms_key_arn,
            tags=[
                {"Key": TEMP_TAG_KEY, "Value": f"temp-vol-bosh-agent-{request.agent_id}"}
            ],
        ).persistent_disk_config()
        volume_id = self.volumes.create(config)
        try:
            snapshot_id = self.volumes.issue_snapshot(volume_id)
            context.compensations.always(
                f"delete temporary snapshot {snapshot_id}",
                lambda: self.volumes.delete_snapshot(snapshot_id),
            )
            self.volumes.complete_snapshot(
                snapshot_id,
                tags={TEMP_TAG_KEY: f"temp-snapshot-bosh-agent-{request.agent_id}"},
            )
        finally:
            self.volumes.delete(volume_id)
        return snapshot_id
