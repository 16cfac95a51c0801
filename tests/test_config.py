import logging

import pytest

from aws_cpi.config import Settings, get_settings
from aws_cpi.errors import InvalidConfiguration
from aws_cpi.logging_config import configure_logging


def settings(**values) -> Settings:
    return Settings(_env_file=None, **values)


def test_defaults_are_valid():
    settings().validate_provider()


def test_region_or_both_endpoints_required():
    with pytest.raises(InvalidConfiguration, match="aws:region"):
        settings(region=None).validate_provider()
    settings(
        region=None, ec2_endpoint="https://ec2.test", elb_endpoint="https://elb.test"
    ).validate_provider()


def test_static_credentials_need_both_keys():
    with pytest.raises(InvalidConfiguration, match="static credentials_source"):
        settings(credentials_source="static", access_key_id="AKIA").validate_provider()
    settings(
        credentials_source="static", access_key_id="AKIA", secret_access_key="secret"
    ).validate_provider()


def test_env_or_profile_rejects_keys():
    with pytest.raises(InvalidConfiguration, match="env_or_profile"):
        settings(access_key_id="AKIA", secret_access_key="secret").validate_provider()


def test_unknown_credentials_source():
    with pytest.raises(InvalidConfiguration, match="Unknown credentials_source"):
        settings(credentials_source="instance").validate_provider()


def test_registry_needs_credentials():
    with pytest.raises(InvalidConfiguration, match="registry:user"):
        settings(registry_endpoint="http://registry.test").validate_provider()


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("AWS_CPI_REGION", "eu-west-1")
    monkeypatch.setenv("AWS_CPI_DEFAULT_SECURITY_GROUPS", '["sg-1", "sg-2"]')
    monkeypatch.setenv("AWS_CPI_FAST_PATH_DELETE", "true")
    get_settings.cache_clear()
    try:
        loaded = get_settings()
    finally:
        get_settings.cache_clear()
    assert loaded.region == "eu-west-1"
    assert loaded.default_security_groups == ["sg-1", "sg-2"]
    assert loaded.fast_path_delete is True
    assert not loaded.registry_enabled


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    previous_level = root.level
    try:
        configure_logging("debug")
        configure_logging("debug")
        ours = [h for h in root.handlers if getattr(h, "_aws_cpi", False)]
        assert len(ours) == 1
        assert root.level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING
    finally:
        for handler in [h for h in root.handlers if getattr(h, "_aws_cpi", False)]:
            root.removeHandler(handler)
        root.setLevel(previous_level)
