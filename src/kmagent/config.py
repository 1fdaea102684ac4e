"""Agent configuration via pydantic-settings."""

from __future__ import annotations

import json

from pydantic import field_validator
from pydantic_settings import BaseSettings

from kmagent.core.locator import SSHD_CONFIG_PATHS


class Settings(BaseSettings):
    model_config = {"env_prefix": "KMAGENT_", "case_sensitive": False}

    # Directory service
    endpoint: str = "http://localhost:3000"
    token: str | None = None
    agent_version: str = "0.3.0"
    request_timeout: float = 30.0
    report_retries: int = 3
    retry_delay: float = 1.0

    # sshd
    sshd_config_paths: list[str] = list(SSHD_CONFIG_PATHS)

    # Accounts
    passwd_path: str = "/etc/passwd"
    min_uid: int = 1000
    include_users: list[str] = []
    exclude_users: list[str] = []

    @field_validator("sshd_config_paths", "include_users", "exclude_users", mode="before")
    @classmethod
    def parse_list(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return json.loads(v)
        return v

    # Logging
    log_level: str = "INFO"


settings = Settings()
