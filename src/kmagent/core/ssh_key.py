"""Parsed, validated SSH public keys."""

from __future__ import annotations

import binascii
from dataclasses import dataclass
from typing import Protocol

from kmagent.core.exceptions import KeyParseError
from kmagent.core.fingerprint import (
    KEY_TYPES,
    decode_key_data,
    fingerprints_match,
    sha256_fingerprint,
)

ALLOWED_KEY_TYPES = frozenset(KEY_TYPES)


class AssignmentLike(Protocol):
    fingerprint: str
    public_key: str
    key_type: str


@dataclass(frozen=True)
class SshKey:
    """One authorized_keys entry: ``<type> <base64 data> [comment]``."""

    key_type: str
    key_data: str
    comment: str | None
    fingerprint: str

    @classmethod
    def parse(cls, line: str) -> SshKey:
        """Parse an SSH public key line.

        Raises KeyParseError for blank and comment lines, lines with fewer
        than two fields, unsupported key types and invalid base64.
        """
        line = line.strip()
        if not line or line.startswith("#"):
            raise KeyParseError("Empty or comment line")

        parts = line.split()
        if len(parts) < 2:
            raise KeyParseError("Invalid SSH key format: too few parts")

        key_type, key_data = parts[0], parts[1]
        if key_type not in ALLOWED_KEY_TYPES:
            raise KeyParseError(f"Unsupported SSH key type: {key_type}")

        try:
            key_bytes = decode_key_data(key_data)
        except (binascii.Error, ValueError) as e:
            raise KeyParseError(f"Invalid base64 in SSH key data: {e}") from e

        comment = " ".join(parts[2:]) or None
        return cls(
            key_type=key_type,
            key_data=key_data,
            comment=comment,
            fingerprint=sha256_fingerprint(key_bytes),
        )

    def to_string(self) -> str:
        """Render back to authorized_keys format."""
        if self.comment:
            return f"{self.key_type} {self.key_data} {self.comment}"
        return f"{self.key_type} {self.key_data}"

    def __str__(self) -> str:
        return self.to_string()

    def matches(self, assignment: AssignmentLike) -> bool:
        """Check if this key is the one a directory-service assignment describes."""
        # Primary match: fingerprint
        if fingerprints_match(self.fingerprint, assignment.fingerprint):
            return True

        # Secondary match: key type and data
        fields = assignment.public_key.split()
        return (
            self.key_type == assignment.key_type
            and len(fields) >= 2
            and self.key_data == fields[1]
        )
