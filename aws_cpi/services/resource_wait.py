"""Polling remote EC2 resources until they settle into a target state.

EC2 is eventually consistent: a freshly created resource may not be visible
to describe calls for a while, a deleted one may vanish before we observe
its terminal state, and every describe call is subject to request
throttling. ``ResourceWaiter.wait`` absorbs all three and surfaces only
``WaitTimeout``, ``TerminalStateReached`` or ``ResourceVanished``.
Throttling has its own budget; ``ProviderRateLimited`` is raised only once
that budget is spent.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from botocore.exceptions import ClientError

from aws_cpi.clients.aws import is_not_found, is_rate_limited, provider_error
from aws_cpi.errors import (
    AbruptlyTerminated,
    ProviderRateLimited,
    ResourceVanished,
    TerminalStateReached,
    WaitTimeout,
)
from aws_cpi.metrics import metrics


logger = logging.getLogger(__name__)

DEFAULT_TRIES = 54
DEFAULT_INTERVAL = 5
DEFAULT_MAX_SLEEP = 15
DEFAULT_THROTTLE_TRIES = 30
ATTACHMENT_TRIES = 30


class WaitPhase(str, Enum):
    CREATE = "create"
    DELETE = "delete"
    UPDATE = "update"


class Verdict(str, Enum):
    RETRY = "retry"
    TREAT_AS_SUCCESS = "treat_as_success"
    FATAL = "fatal"


class ResourceMissing(LookupError):
    """Raised by a pollable when a describe call returns nothing."""


@dataclass(frozen=True)
class Observation:
    state: str
    reason: str | None = None


class Pollable(Protocol):
    resource_id: str

    def refresh(self) -> Observation: ...


@dataclass(frozen=True)
class WaitSpec:
    description: str
    target_state: str
    failure_states: frozenset[str] = frozenset()
    phase: WaitPhase = WaitPhase.CREATE
    tries: int = DEFAULT_TRIES
    interval: int = DEFAULT_INTERVAL
    max_sleep: int = DEFAULT_MAX_SLEEP
    tries_before_max: int | None = None
    exponential: bool = False
    throttle_tries: int = DEFAULT_THROTTLE_TRIES


def sleep_schedule(
    attempt: int,
    interval: int,
    max_sleep: int = DEFAULT_MAX_SLEEP,
    tries_before_max: int | None = None,
    exponential: bool = False,
) -> int:
    if exponential:
        seconds = interval**attempt
    else:
        seconds = interval * attempt + 1
    if tries_before_max is not None and attempt >= tries_before_max:
        seconds = max_sleep
    return min(seconds, max_sleep)


def classify(error: BaseException, phase: WaitPhase) -> Verdict:
    if is_rate_limited(error):
        return Verdict.RETRY
    if isinstance(error, ResourceMissing) or is_not_found(error):
        if phase == WaitPhase.DELETE:
            return Verdict.TREAT_AS_SUCCESS
        if phase == WaitPhase.CREATE:
            return Verdict.RETRY
    return Verdict.FATAL


class ResourceWaiter:
    def __init__(self, sleep: Callable[[float], Any] = time.sleep):
        self.sleep = sleep

    def wait(
        self,
        resource: Pollable,
        spec: WaitSpec,
        predicate: Callable[[Observation], bool] | None = None,
    ) -> Observation | None:
        done = predicate or (lambda obs: obs.state == spec.target_state)
        last: Observation | None = None
        attempt = 0
        throttled = 0
        while attempt < spec.tries:
            try:
                last = resource.refresh()
            except Exception as exc:  # noqa: BLE001
                phase = spec.phase
                # a resource that was already observed and then disappears did not
                # just fail to become visible
                if phase == WaitPhase.CREATE and last is not None:
                    phase = WaitPhase.UPDATE
                verdict = classify(exc, phase)
                if verdict == Verdict.TREAT_AS_SUCCESS:
                    logger.debug(
                        "%s: %s is gone, treating as %s",
                        spec.description,
                        resource.resource_id,
                        spec.target_state,
                    )
                    return None
                if verdict == Verdict.FATAL:
                    if isinstance(exc, ResourceMissing) or is_not_found(exc):
                        raise ResourceVanished(resource.resource_id, str(exc)) from exc
                    if isinstance(exc, ClientError):
                        raise provider_error(exc) from exc
                    raise
                if is_rate_limited(exc):
                    if throttled >= spec.throttle_tries:
                        raise ProviderRateLimited(
                            f"{spec.description}: request limit exceeded "
                            f"{throttled} times"
                        ) from exc
                    seconds = sleep_schedule(
                        throttled, 2, spec.max_sleep, exponential=True
                    )
                    throttled += 1
                    logger.debug(
                        "%s: request limit exceeded, retrying in %s seconds (%s/%s)",
                        spec.description,
                        seconds,
                        throttled,
                        spec.throttle_tries,
                    )
                    self.sleep(seconds)
                    continue
                logger.debug("%s: %s: %s", spec.description, type(exc).__name__, exc)
            else:
                if done(last):
                    logger.debug(
                        "%s: %s is now %s",
                        spec.description,
                        resource.resource_id,
                        last.state,
                    )
                    return last
                if last.state in spec.failure_states:
                    logger.error(
                        "%s: %s state is %s, expected %s",
                        spec.description,
                        resource.resource_id,
                        last.state,
                        spec.target_state,
                    )
                    raise TerminalStateReached(
                        resource_id=resource.resource_id,
                        state=last.state,
                        expected=spec.target_state,
                        reason=last.reason,
                    )

            attempt += 1
            if attempt >= spec.tries:
                break
            seconds = sleep_schedule(
                attempt - 1,
                spec.interval,
                spec.max_sleep,
                spec.tries_before_max,
                spec.exponential,
            )
            logger.debug(
                "%s, retrying in %s seconds (%s/%s)",
                spec.description,
                seconds,
                attempt,
                spec.tries,
            )
            self.sleep(seconds)

        metrics.inc("wait_timeouts_total")
        raise WaitTimeout(
            description=spec.description,
            attempts=spec.tries,
            last_state=last.state if last else None,
        )

    def for_instance(
        self, ec2, instance_id: str, state: str, tries: int = DEFAULT_TRIES
    ) -> Observation | None:
        phase = WaitPhase.DELETE if state == "terminated" else WaitPhase.CREATE
        spec = WaitSpec(
            description=f"instance {instance_id} to be {state}",
            target_state=state,
            phase=phase,
            tries=tries,
        )
        resource = InstancePoll(ec2, instance_id)
        if phase == WaitPhase.DELETE:
            return self.wait(resource, spec)

        def running_or_abort(obs: Observation) -> bool:
            if obs.state == "terminated":
                logger.error(
                    "instance %s failed to create: state changed from 'starting' to 'terminated'",
                    instance_id,
                )
                raise AbruptlyTerminated(
                    resource_id=instance_id,
                    state=obs.state,
                    expected=state,
                    reason=obs.reason,
                    message=(
                        f"{instance_id} failed to create: state changed from 'starting' "
                        f"to 'terminated' with reason: '{obs.reason}'"
                    ),
                )
            return obs.state == state

        return self.wait(resource, spec, running_or_abort)

    def for_volume(
        self, ec2, volume_id: str, state: str, tries: int = DEFAULT_TRIES
    ) -> Observation | None:
        phase = WaitPhase.DELETE if state == "deleted" else WaitPhase.CREATE
        spec = WaitSpec(
            description=f"volume {volume_id} to be {state}",
            target_state=state,
            failure_states=frozenset({"error"}),
            phase=phase,
            tries=tries,
        )
        return self.wait(VolumePoll(ec2, volume_id), spec)

    def for_snapshot(
        self, ec2, snapshot_id: str, state: str = "completed", tries: int = DEFAULT_TRIES
    ) -> Observation | None:
        spec = WaitSpec(
            description=f"snapshot {snapshot_id} to be {state}",
            target_state=state,
            failure_states=frozenset({"error"}),
            tries=tries,
        )
        return self.wait(SnapshotPoll(ec2, snapshot_id), spec)

    def for_image(
        self, ec2, image_id: str, state: str, tries: int = DEFAULT_TRIES
    ) -> Observation | None:
        phase = WaitPhase.DELETE if state == "deregistered" else WaitPhase.CREATE
        spec = WaitSpec(
            description=f"image {image_id} to be {state}",
            target_state=state,
            failure_states=frozenset({"failed"}),
            phase=phase,
            tries=tries,
        )
        return self.wait(ImagePoll(ec2, image_id), spec)

    def for_attachment(
        self,
        ec2,
        volume_id: str,
        instance_id: str,
        state: str,
        tries: int = ATTACHMENT_TRIES,
    ) -> Observation | None:
        phase = WaitPhase.DELETE if state == "detached" else WaitPhase.CREATE
        spec = WaitSpec(
            description=f"attachment of {volume_id} to {instance_id} to be {state}",
            target_state=state,
            phase=phase,
            tries=tries,
        )
        return self.wait(AttachmentPoll(ec2, volume_id, instance_id), spec)


class InstancePoll:
    def __init__(self, ec2, instance_id: str):
        self.ec2 = ec2
        self.resource_id = instance_id

    def refresh(self) -> Observation:
        response = self.ec2.describe_instances(InstanceIds=[self.resource_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return Observation(
                    state=instance["State"]["Name"],
                    reason=(instance.get("StateReason") or {}).get("Message"),
                )
        raise ResourceMissing(self.resource_id)


class VolumePoll:
    def __init__(self, ec2, volume_id: str):
        self.ec2 = ec2
        self.resource_id = volume_id

    def refresh(self) -> Observation:
        volumes = self.ec2.describe_volumes(VolumeIds=[self.resource_id]).get(
            "Volumes", []
        )
        if not volumes:
            raise ResourceMissing(self.resource_id)
        return Observation(state=volumes[0]["State"])


class SnapshotPoll:
    def __init__(self, ec2, snapshot_id: str):
        self.ec2 = ec2
        self.resource_id = snapshot_id

    def refresh(self) -> Observation:
        snapshots = self.ec2.describe_snapshots(SnapshotIds=[self.resource_id]).get(
            "Snapshots", []
        )
        if not snapshots:
            raise ResourceMissing(self.resource_id)
        return Observation(
            state=snapshots[0]["State"], reason=snapshots[0].get("StateMessage")
        )


class ImagePoll:
    def __init__(self, ec2, image_id: str):
        self.ec2 = ec2
        self.resource_id = image_id

    def refresh(self) -> Observation:
        images = self.ec2.describe_images(ImageIds=[self.resource_id]).get(
            "Images", []
        )
        if not images:
            raise ResourceMissing(self.resource_id)
        return Observation(
            state=images[0]["State"],
            reason=(images[0].get("StateReason") or {}).get("Message"),
        )


class AttachmentPoll:
    def __init__(self, ec2, volume_id: str, instance_id: str):
        self.ec2 = ec2
        self.volume_id = volume_id
        self.instance_id = instance_id
        self.resource_id = f"{volume_id}:{instance_id}"

    def refresh(self) -> Observation:
        volumes = self.ec2.describe_volumes(VolumeIds=[self.volume_id]).get(
            "Volumes", []
        )
        for volume in volumes:
            for attachment in volume.get("Attachments", []):
                if attachment.get("InstanceId") == self.instance_id:
                    return Observation(state=attachment["State"])
        raise ResourceMissing(self.resource_id)
