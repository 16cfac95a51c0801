import logging
import time
from collections.abc import Callable
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from aws_cpi.clients.aws import error_code, is_not_found


logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 127
MAX_VALUE_LENGTH = 255
NOT_FOUND_TRIES = 10


def format_tags(tags: dict[str, Any]) -> list[dict[str, str]]:
    formatted: list[dict[str, str]] = []
    for key, value in tags.items():
        if key is None or value is None:
            continue
        formatted.append(
            {
                "Key": str(key)[:MAX_KEY_LENGTH],
                "Value": str(value)[:MAX_VALUE_LENGTH],
            }
        )
    return formatted


class TagApplier:
    def __init__(self, ec2, sleep: Callable[[float], Any] = time.sleep):
        self.ec2 = ec2
        self.sleep = sleep

    def apply(self, resource_id: str, tags: dict[str, Any]) -> None:
        formatted = format_tags(tags)
        if not formatted:
            return
        for attempt in range(1, NOT_FOUND_TRIES + 1):
            try:
                self.ec2.create_tags(Resources=[resource_id], Tags=formatted)
                return
            except ClientError as exc:
                if error_code(exc) == "TagLimitExceeded":
                    logger.error("could not tag %s: %s", resource_id, exc)
                    return
                if is_not_found(exc) and attempt < NOT_FOUND_TRIES:
                    logger.debug(
                        "tagging %s: not visible yet (%s/%s)",
                        resource_id,
                        attempt,
                        NOT_FOUND_TRIES,
                    )
                    self.sleep(1)
                    continue
                logger.warning("could not tag %s: %s", resource_id, exc)
                return
            except BotoCoreError as exc:
                logger.warning("could not tag %s: %s", resource_id, exc)
                return
