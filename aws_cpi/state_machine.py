from enum import Enum


class ProvisioningStage(str, Enum):
    PREFLIGHT = "PREFLIGHT"
    RESOLVE_IMAGE = "RESOLVE_IMAGE"
    STAGE_SNAPSHOT = "STAGE_SNAPSHOT"
    MAP_DEVICES = "MAP_DEVICES"
    LAUNCH = "LAUNCH"
    REGISTER_LB = "REGISTER_LB"
    CONFIGURE_NETWORK = "CONFIGURE_NETWORK"
    PUSH_AGENT_CONFIG = "PUSH_AGENT_CONFIG"
    DONE = "DONE"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ProvisioningStage.PREFLIGHT.value: {
        ProvisioningStage.RESOLVE_IMAGE.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.RESOLVE_IMAGE.value: {
        ProvisioningStage.STAGE_SNAPSHOT.value,
        ProvisioningStage.MAP_DEVICES.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.STAGE_SNAPSHOT.value: {
        ProvisioningStage.MAP_DEVICES.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.MAP_DEVICES.value: {
        ProvisioningStage.LAUNCH.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.LAUNCH.value: {
        ProvisioningStage.REGISTER_LB.value,
        ProvisioningStage.ROLLED_BACK.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.REGISTER_LB.value: {
        ProvisioningStage.CONFIGURE_NETWORK.value,
        ProvisioningStage.ROLLED_BACK.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.CONFIGURE_NETWORK.value: {
        ProvisioningStage.PUSH_AGENT_CONFIG.value,
        ProvisioningStage.ROLLED_BACK.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.PUSH_AGENT_CONFIG.value: {
        ProvisioningStage.DONE.value,
        ProvisioningStage.ROLLED_BACK.value,
        ProvisioningStage.FAILED.value,
    },
    ProvisioningStage.DONE.value: set(),
    ProvisioningStage.ROLLED_BACK.value: {ProvisioningStage.FAILED.value},
    ProvisioningStage.FAILED.value: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
