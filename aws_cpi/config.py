from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from aws_cpi.errors import InvalidConfiguration


CREDENTIALS_SOURCES = {"static", "env_or_profile"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AWS_CPI_", env_file=".env", extra="ignore"
    )

    region: str | None = Field(default="us-east-1")
    ec2_endpoint: str | None = Field(default=None)
    elb_endpoint: str | None = Field(default=None)

    credentials_source: str = Field(default="env_or_profile")
    access_key_id: str | None = Field(default=None)
    secret_access_key: str | None = Field(default=None)
    session_token: str | None = Field(default=None)

    default_key_name: str | None = Field(default=None)
    default_security_groups: list[str] = Field(default_factory=list)
    default_iam_instance_profile: str | None = Field(default=None)
    max_retries: int = Field(default=8, ge=0)

    fast_path_delete: bool = Field(default=False)
    encrypted: bool = Field(default=False)
    kms_key_arn: str | None = Field(default=None)

    registry_endpoint: str | None = Field(default=None)
    registry_user: str | None = Field(default=None)
    registry_password: str | None = Field(default=None)

    agent: dict[str, Any] = Field(default_factory=dict)

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=1, ge=0)
    log_level: str = Field(default="INFO")

    @property
    def registry_enabled(self) -> bool:
        return bool(self.registry_endpoint)

    def validate_provider(self) -> None:
        if not self.region and not (self.ec2_endpoint and self.elb_endpoint):
            raise InvalidConfiguration(
                "missing configuration parameters > aws:region, or aws:ec2_endpoint and aws:elb_endpoint"
            )
        if self.credentials_source not in CREDENTIALS_SOURCES:
            raise InvalidConfiguration(
                f"Unknown credentials_source {self.credentials_source}"
            )
        has_keys = bool(self.access_key_id or self.secret_access_key)
        if self.credentials_source == "static" and not (
            self.access_key_id and self.secret_access_key
        ):
            raise InvalidConfiguration(
                "Must use access_key_id and secret_access_key with static credentials_source"
            )
        if self.credentials_source == "env_or_profile" and has_keys:
            raise InvalidConfiguration(
                "Can't use access_key_id and secret_access_key with env_or_profile credentials_source"
            )
        if self.registry_endpoint and not (
            self.registry_user and self.registry_password
        ):
            raise InvalidConfiguration(
                "missing configuration parameters > registry:user, registry:password"
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
