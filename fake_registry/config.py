from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeRegistrySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_REGISTRY_", extra="ignore")

    user: str = Field(default="admin")
    password: str = Field(default="admin")


@lru_cache(maxsize=1)
def get_settings() -> FakeRegistrySettings:
    return FakeRegistrySettings()
