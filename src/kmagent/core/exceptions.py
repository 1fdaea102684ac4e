"""Error types raised by the agent core and its collaborators."""

from __future__ import annotations

from pathlib import Path


class KmAgentError(Exception):
    """Base class for agent errors."""


class KeyParseError(KmAgentError, ValueError):
    """A public key line is malformed, uses an unsupported algorithm or bad base64."""


class ConfigReadError(KmAgentError):
    """An sshd configuration file exists but could not be read."""

    def __init__(self, path: str | Path, reason: object):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Cannot read sshd config {self.path}: {reason}")


class KeyFileError(KmAgentError):
    """A filesystem step failed while reading or committing an authorized_keys file."""

    def __init__(self, path: str | Path, step: str, reason: object):
        self.path = Path(path)
        self.step = step
        self.reason = reason
        super().__init__(f"{step} failed for {self.path}: {reason}")


class UserEnumerationError(KmAgentError):
    """Local accounts could not be enumerated. Fatal for a sync pass."""


class ApiError(KmAgentError):
    """The directory service answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AgentVersionError(ApiError):
    """The directory service rejected this agent version (HTTP 426)."""

    def __init__(self, current_version: str, minimum_version: str, message: str | None = None):
        self.current_version = current_version
        self.minimum_version = minimum_version
        super().__init__(
            message
            or f"Agent version {current_version} is too old. "
            f"Minimum required version: {minimum_version}. Please update the agent.",
            status_code=426,
        )
