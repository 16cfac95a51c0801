import json
import logging
from typing import Any

import httpx

from aws_cpi.clients.http import RequestFailure, RetryPolicy, request_with_retry
from aws_cpi.errors import CloudError


logger = logging.getLogger(__name__)


class RegistryError(CloudError):
    pass


class RegistryClient:
    def __init__(
        self,
        endpoint: str,
        user: str,
        password: str,
        retry: RetryPolicy,
        transport: httpx.BaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.retry = retry
        self.client = httpx.Client(
            base_url=self.endpoint,
            auth=(user, password),
            timeout=10.0,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def _path(self, instance_id: str) -> str:
        return f"/instances/{instance_id}/settings"

    def read_settings(self, instance_id: str) -> dict[str, Any]:
        try:
            response = request_with_retry(
                self.client, "GET", self._path(instance_id), self.retry
            )
        except RequestFailure as exc:
            raise RegistryError(
                f"Cannot read settings for '{instance_id}': {exc.detail}"
            ) from exc
        try:
            body = response.json()
            settings = json.loads(body["settings"])
        except (ValueError, KeyError, TypeError) as exc:
            raise RegistryError(
                f"Invalid settings format for '{instance_id}': {response.text[:240]}"
            ) from exc
        if not isinstance(settings, dict):
            raise RegistryError(f"Invalid settings format for '{instance_id}'")
        return settings

    def update_settings(self, instance_id: str, settings: dict[str, Any]) -> None:
        try:
            request_with_retry(
                self.client,
                "PUT",
                self._path(instance_id),
                self.retry,
                content=json.dumps(settings),
                headers={"Content-Type": "application/json"},
            )
        except RequestFailure as exc:
            raise RegistryError(
                f"Cannot update settings for '{instance_id}': {exc.detail}"
            ) from exc
        logger.debug("registry settings updated instance_id=%s", instance_id)

    def delete_settings(self, instance_id: str) -> None:
        try:
            response = request_with_retry(
                self.client,
                "DELETE",
                self._path(instance_id),
                self.retry,
                allowed_statuses=frozenset({404}),
            )
        except RequestFailure as exc:
            raise RegistryError(
                f"Cannot delete settings for '{instance_id}': {exc.detail}"
            ) from exc
        if response.status_code == 404:
            logger.info("registry had no settings for instance_id=%s", instance_id)
        else:
            logger.debug("registry settings deleted instance_id=%s", instance_id)

    def close(self) -> None:
        self.client.close()
