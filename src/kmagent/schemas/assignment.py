"""Key assignment schemas (directory service -> agent)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class KeyAssignment(BaseModel):
    """Desired SSH public key for one local username. Re-validated before use."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    fingerprint: str
    public_key: str = Field(alias="publicKey")
    key_type: str = Field(alias="keyType")
    comment: str | None = None
    use_primary_key: bool | None = Field(default=None, alias="usePrimaryKey")
    assignment_id: str = Field(alias="assignmentId")


class KeyAssignmentsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    host_id: str | None = Field(default=None, alias="hostId")
    hostname: str | None = None
    assignments: list[KeyAssignment] | None = None
    timestamp: str | None = None
    error: str | None = None
