from aws_cpi.state_machine import ProvisioningStage, can_transition


def test_valid_transitions():
    assert can_transition(
        ProvisioningStage.PREFLIGHT.value, ProvisioningStage.RESOLVE_IMAGE.value
    )
    assert can_transition(
        ProvisioningStage.RESOLVE_IMAGE.value, ProvisioningStage.MAP_DEVICES.value
    )
    assert can_transition(
        ProvisioningStage.RESOLVE_IMAGE.value, ProvisioningStage.STAGE_SNAPSHOT.value
    )
    assert can_transition(
        ProvisioningStage.PUSH_AGENT_CONFIG.value, ProvisioningStage.DONE.value
    )
    assert can_transition(
        ProvisioningStage.CONFIGURE_NETWORK.value, ProvisioningStage.ROLLED_BACK.value
    )
    assert can_transition(
        ProvisioningStage.ROLLED_BACK.value, ProvisioningStage.FAILED.value
    )


def test_invalid_transition_rejected():
    assert not can_transition(
        ProvisioningStage.PREFLIGHT.value, ProvisioningStage.LAUNCH.value
    )
    assert not can_transition(
        ProvisioningStage.MAP_DEVICES.value, ProvisioningStage.ROLLED_BACK.value
    )
    assert not can_transition(ProvisioningStage.DONE.value, ProvisioningStage.FAILED.value)
    assert not can_transition(
        ProvisioningStage.FAILED.value, ProvisioningStage.PREFLIGHT.value
    )


def test_idempotent_transition_allowed():
    assert can_transition(ProvisioningStage.LAUNCH.value, ProvisioningStage.LAUNCH.value)
