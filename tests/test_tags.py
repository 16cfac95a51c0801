from typing import Any, cast

from botocore.exceptions import EndpointConnectionError

from aws_cpi.services.tags import TagApplier, format_tags
from fake_aws import FakeEC2, client_error, no_sleep


def test_format_tags_truncates_and_skips_none():
    tags = format_tags({"k" * 200: "v" * 300, "skipped": None, "index": 3})
    assert tags == [
        {"Key": "k" * 127, "Value": "v" * 255},
        {"Key": "index", "Value": "3"},
    ]


def test_apply_issues_single_create_tags_call():
    ec2 = FakeEC2()
    TagApplier(cast(Any, ec2), sleep=no_sleep).apply("i-1", {"job": "web", "index": 0})
    assert len(ec2.called("create_tags")) == 1
    assert ec2.tags["i-1"] == {"job": "web", "index": "0"}


def test_apply_skips_call_when_nothing_to_tag():
    ec2 = FakeEC2()
    TagApplier(cast(Any, ec2), sleep=no_sleep).apply("i-1", {"job": None})
    assert ec2.called("create_tags") == []


def test_tag_limit_exceeded_is_swallowed():
    ec2 = FakeEC2()
    ec2.fail("create_tags", client_error("TagLimitExceeded", "CreateTags"))
    TagApplier(cast(Any, ec2), sleep=no_sleep).apply("i-1", {"a": "b"})
    assert "i-1" not in ec2.tags


def test_not_yet_visible_resource_is_retried():
    ec2 = FakeEC2()
    ec2.fail(
        "create_tags",
        client_error("InvalidInstanceID.NotFound", "CreateTags"),
        client_error("InvalidInstanceID.NotFound", "CreateTags"),
    )
    TagApplier(cast(Any, ec2), sleep=no_sleep).apply("i-1", {"a": "b"})
    assert len(ec2.called("create_tags")) == 3
    assert ec2.tags["i-1"] == {"a": "b"}


def test_other_tagging_errors_are_logged_not_raised(caplog):
    ec2 = FakeEC2()
    ec2.fail("create_tags", client_error("UnauthorizedOperation", "CreateTags"))
    TagApplier(cast(Any, ec2), sleep=no_sleep).apply("i-1", {"a": "b"})
    assert "could not tag i-1" in caplog.text


def test_transport_errors_while_tagging_are_logged_not_raised(caplog):
    ec2 = FakeEC2()
    ec2.fail("create_tags", EndpointConnectionError(endpoint_url="https://ec2.test"))
    TagApplier(cast(Any, ec2), sleep=no_sleep).apply("snap-1", {"a": "b"})
    assert len(ec2.called("create_tags")) == 1
    assert "could not tag snap-1" in caplog.text
