"""Agent report schemas (agent -> directory service)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SystemInfo(BaseModel):
    os: str
    arch: str
    platform: str
    kernel: str
    distribution: str
    version: str


class UserReport(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    username: str
    uid: int
    shell: str | None = None
    home_dir: str | None = None
    disabled: bool | None = None


class AgentReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hostname: str
    system_info: SystemInfo = Field(alias="systemInfo")
    agent_version: str = Field(alias="agentVersion")
    users: list[UserReport]


class AgentReportResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    host_id: str | None = Field(default=None, alias="hostId")
    message: str | None = None
    users_processed: int | None = Field(default=None, alias="usersProcessed")
    timestamp: str | None = None
    error: str | None = None


class VersionErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error: str
    message: str
    minimum_version: str = Field(alias="minimumVersion")
    current_version: str = Field(alias="currentVersion")
