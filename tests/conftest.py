"""Test fixtures and configuration."""

from __future__ import annotations

import base64
import hashlib
import os
from pathlib import Path

import pytest

from kmagent.core.key_store import KeyFileStore, PrivilegeContext
from kmagent.core.locator import AuthorizedKeysLocator
from kmagent.core.reconciler import ReconciliationEngine
from kmagent.core.users import UserInfo
from kmagent.schemas.assignment import KeyAssignment


def _wire_blob(key_type: str, seed: str) -> bytes:
    """An SSH wire-format public key blob: string(type) || string(32 bytes)."""
    name = key_type.encode()
    payload = hashlib.sha256(seed.encode()).digest()
    return len(name).to_bytes(4, "big") + name + len(payload).to_bytes(4, "big") + payload


@pytest.fixture
def key_line():
    """Factory for syntactically valid public key lines, unique per seed."""

    def _make(seed: str, key_type: str = "ssh-ed25519", comment: str | None = None) -> str:
        data = base64.b64encode(_wire_blob(key_type, seed)).decode("ascii")
        return f"{key_type} {data} {comment}" if comment else f"{key_type} {data}"

    return _make


@pytest.fixture
def assignment():
    """Factory for KeyAssignment records as the directory service sends them."""
    counter = iter(range(1, 10_000))

    def _make(username: str, public_key: str, fingerprint: str = "SHA256:unknown") -> KeyAssignment:
        return KeyAssignment(
            username=username,
            fingerprint=fingerprint,
            public_key=public_key,
            key_type=public_key.split()[0] if public_key.split() else "",
            assignment_id=f"asg-{next(counter)}",
        )

    return _make


@pytest.fixture
def home_root(tmp_path: Path) -> Path:
    root = tmp_path / "home"
    root.mkdir()
    return root


@pytest.fixture
def make_user(home_root: Path):
    def _make(username: str, uid: int = 1000) -> UserInfo:
        return UserInfo(username=username, uid=uid, home_dir=str(home_root / username))

    return _make


@pytest.fixture
def privilege() -> PrivilegeContext:
    """Unprivileged identity of the test process."""
    return PrivilegeContext(uid=os.geteuid(), is_root=False)


@pytest.fixture
def no_sshd_config(tmp_path: Path) -> list[str]:
    return [str(tmp_path / "missing" / "sshd_config")]


@pytest.fixture
def store(privilege: PrivilegeContext) -> KeyFileStore:
    return KeyFileStore(privilege, gid_resolver=lambda uid: uid)


@pytest.fixture
def engine(no_sshd_config: list[str], store: KeyFileStore) -> ReconciliationEngine:
    return ReconciliationEngine(AuthorizedKeysLocator(no_sshd_config), store)


@pytest.fixture
def passwd_file(tmp_path: Path, home_root: Path) -> Path:
    """passwd(5) with two managed accounts and some system noise."""
    path = tmp_path / "passwd"
    path.write_text(
        "daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin\n"
        "sshd:x:110:65534::/run/sshd:/usr/sbin/nologin\n"
        f"alice:x:1000:1000:Alice:{home_root}/alice:/bin/bash\n"
        f"bob:x:1001:1001:Bob:{home_root}/bob:/usr/sbin/nologin\n"
    )
    return path
