"""Fingerprint calculation and matching."""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re

logger = logging.getLogger(__name__)

# Algorithm identifiers accepted in authorized_keys lines, mapped to key family
KEY_TYPES = {
    "ssh-rsa": "rsa",
    "ssh-dss": "dsa",
    "ssh-ed25519": "ed25519",
    "ecdsa-sha2-nistp256": "ecdsa",
    "ecdsa-sha2-nistp384": "ecdsa",
    "ecdsa-sha2-nistp521": "ecdsa",
    "sk-ssh-ed25519@openssh.com": "ed25519-sk",
    "sk-ecdsa-sha2-nistp256@openssh.com": "ecdsa-sk",
}

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def decode_key_data(key_data: str) -> bytes:
    """Strictly decode standard base64 key data.

    Only the canonical encoding is accepted: surplus padding or non-zero
    trailing bits raise binascii.Error (a ValueError) like a bad alphabet.
    """
    if not key_data or not _BASE64_RE.match(key_data):
        raise binascii.Error("key data is not standard base64")
    decoded = base64.b64decode(key_data, validate=True)
    if base64.b64encode(decoded).decode("ascii") != key_data:
        raise binascii.Error("key data is not canonical base64")
    return decoded


def sha256_fingerprint(key_bytes: bytes) -> str:
    """Return "SHA256:" + standard base64 of the SHA-256 digest of key_bytes."""
    digest = hashlib.sha256(key_bytes).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii")


def calculate_sha256_fingerprint(public_key_data: str) -> str | None:
    """Calculate SHA256 fingerprint from a public key string.

    Accepts a full authorized_keys line ("ssh-ed25519 AAAA... comment") or
    just the base64 part. Returns None when no key data can be decoded.
    """
    try:
        key_b64 = _extract_key_data(public_key_data)
        if not key_b64:
            return None
        return sha256_fingerprint(decode_key_data(key_b64))
    except ValueError as e:
        logger.debug("Failed to calculate SHA256 fingerprint: %s", e)
        return None


def calculate_md5_fingerprint(public_key_data: str) -> str | None:
    """Calculate MD5 fingerprint from a public key string.

    Returns: "MD5:xx:xx:xx:..." or None on error.
    """
    try:
        key_b64 = _extract_key_data(public_key_data)
        if not key_b64:
            return None
        digest = hashlib.md5(decode_key_data(key_b64)).hexdigest()
        fp = ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))
        return f"MD5:{fp}"
    except ValueError as e:
        logger.debug("Failed to calculate MD5 fingerprint: %s", e)
        return None


def _extract_key_data(public_key_data: str) -> str | None:
    """Extract the base64-encoded key data from a key line or bare base64."""
    public_key_data = public_key_data.strip()

    # authorized_keys format: type base64 [comment]
    parts = public_key_data.split()
    if len(parts) >= 2 and parts[0] in KEY_TYPES:
        return parts[1]

    if len(parts) == 1 and _BASE64_RE.match(public_key_data):
        return public_key_data

    return None


def detect_key_type(public_key_data: str) -> str | None:
    """Detect the key family ("rsa", "ed25519", ...) from a public key line."""
    parts = public_key_data.strip().split()
    if not parts:
        return None
    return KEY_TYPES.get(parts[0])


def normalize_fingerprint(fingerprint: str) -> str:
    """Normalize a fingerprint string.

    Ensures a SHA256: prefix and drops base64 padding, so the OpenSSH form
    ("SHA256:abc") and the padded form ("SHA256:abc=") compare equal.
    """
    fingerprint = fingerprint.strip()
    if fingerprint.startswith("MD5:"):
        return fingerprint.lower().replace("md5:", "MD5:", 1)
    if fingerprint.startswith("SHA256:"):
        return fingerprint.rstrip("=")
    # Colon-separated hex is MD5
    if re.match(r"^([0-9a-fA-F]{2}:){15}[0-9a-fA-F]{2}$", fingerprint):
        return f"MD5:{fingerprint.lower()}"
    return f"SHA256:{fingerprint.rstrip('=')}"


def fingerprints_match(fp1: str, fp2: str) -> bool:
    """Check if two fingerprints match (handles different formats)."""
    if not fp1 or not fp2:
        return False
    return normalize_fingerprint(fp1) == normalize_fingerprint(fp2)
