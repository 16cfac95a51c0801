import json

import httpx
import pytest

from aws_cpi.clients.http import RetryPolicy
from aws_cpi.clients.registry import RegistryClient, RegistryError


def registry(handler) -> RegistryClient:
    return RegistryClient(
        "http://registry.test/",
        "admin",
        "secret",
        RetryPolicy(attempts=2, sleep_sec=0),
        transport=httpx.MockTransport(handler),
    )


def test_read_settings_decodes_nested_document():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        settings = json.dumps({"agent_id": "agent-1"})
        return httpx.Response(200, json={"settings": settings, "status": "ok"})

    assert registry(handler).read_settings("i-1") == {"agent_id": "agent-1"}
    assert seen[0].url.path == "/instances/i-1/settings"
    assert seen[0].headers["Authorization"].startswith("Basic ")


def test_read_settings_rejects_malformed_body():
    client = registry(lambda request: httpx.Response(200, json={"status": "ok"}))
    with pytest.raises(RegistryError, match="Invalid settings format"):
        client.read_settings("i-1")


def test_read_settings_of_unknown_instance():
    client = registry(lambda request: httpx.Response(404, text="unknown instance"))
    with pytest.raises(RegistryError, match="Cannot read settings for 'i-1'"):
        client.read_settings("i-1")


def test_update_settings_puts_json():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        assert request.headers["Content-Type"] == "application/json"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "ok"})

    registry(handler).update_settings("i-1", {"agent_id": "agent-1"})
    assert bodies == [{"agent_id": "agent-1"}]


def test_update_settings_failure_is_a_cloud_error():
    client = registry(lambda request: httpx.Response(503))
    with pytest.raises(RegistryError) as excinfo:
        client.update_settings("i-1", {})
    assert excinfo.value.wire_type == "Bosh::Clouds::CloudError"


def test_delete_settings_tolerates_missing_instance():
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(404)

    registry(handler).delete_settings("i-1")
    assert methods == ["DELETE"]
