"""Local account enumeration from the passwd database."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from kmagent.core.exceptions import UserEnumerationError

logger = logging.getLogger(__name__)

_DISABLED_SHELLS = ("/usr/bin/false", "/bin/false", "/sbin/nologin", "/usr/sbin/nologin")
_DEFAULT_SHELL = "/bin/bash"


@dataclass
class UserInfo:
    """A local account eligible for key management."""

    username: str
    uid: int
    gid: int | None = None
    home_dir: str | None = None
    shell: str | None = None
    disabled: bool | None = None


def collect_users(
    passwd_path: str | Path = "/etc/passwd",
    min_uid: int = 1000,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> list[UserInfo]:
    """Enumerate root and regular accounts, sorted by uid.

    Only uid 0 and uid >= min_uid are kept. A non-empty ``include`` restricts
    the result to those names; ``exclude`` always wins.
    """
    try:
        content = Path(passwd_path).read_text(errors="replace")
    except OSError as e:
        raise UserEnumerationError(f"Failed to read {passwd_path}: {e}") from e

    users = parse_passwd(content, min_uid=min_uid)

    include = set(include)
    exclude = set(exclude)
    if include:
        users = [u for u in users if u.username in include]
    if exclude:
        users = [u for u in users if u.username not in exclude]

    users.sort(key=lambda u: u.uid)
    logger.info("Collected %d users from %s", len(users), passwd_path)
    return users


def parse_passwd(content: str, min_uid: int = 1000) -> list[UserInfo]:
    """Parse passwd(5) content, skipping system accounts and malformed rows."""
    users: list[UserInfo] = []
    for line in content.splitlines():
        if not line.strip() or line.startswith("#"):
            continue

        parts = line.split(":")
        if len(parts) < 7:
            continue

        username, home_dir, shell = parts[0], parts[5], parts[6].strip()
        try:
            uid = int(parts[2])
        except ValueError:
            logger.debug("Skipping passwd entry with bad uid: %s", username)
            continue
        try:
            gid: int | None = int(parts[3])
        except ValueError:
            gid = None

        # Exclude system users (UID 1..min_uid-1)
        if uid != 0 and uid < min_uid:
            continue

        if not home_dir:
            home_dir = "/root" if uid == 0 else f"/home/{username}"

        users.append(UserInfo(
            username=username,
            uid=uid,
            gid=gid,
            home_dir=home_dir,
            shell=_DEFAULT_SHELL if not shell or shell in _DISABLED_SHELLS else shell,
            disabled=is_user_disabled(shell),
        ))
    return users


def is_user_disabled(shell: str) -> bool:
    """An account is disabled when its login shell refuses logins."""
    return shell in _DISABLED_SHELLS
