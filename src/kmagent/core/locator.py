"""Discovery of the authorized_keys files sshd consults for each user."""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from kmagent.core.exceptions import ConfigReadError
from kmagent.core.users import UserInfo

logger = logging.getLogger(__name__)

SSHD_CONFIG_PATHS = (
    "/etc/ssh/sshd_config",
    "/etc/sshd_config",
    "/usr/local/etc/ssh/sshd_config",
    "/usr/local/etc/sshd_config",
)
DEFAULT_PATTERN = ".ssh/authorized_keys"

_DIRECTIVE_RE = re.compile(r"^\s*AuthorizedKeysFile(?:\s*=\s*|\s+)(.*)$", re.IGNORECASE)
_TOKEN_RE = re.compile(r"%(.)", re.DOTALL)


@dataclass
class AuthorizedKeysFile:
    """One physical authorized_keys location for one user."""

    path: Path
    username: str
    uid: int
    exists: bool
    home_dir: str = ""
    pattern: str = DEFAULT_PATTERN


def find_sshd_config(paths: Iterable[str | Path] = SSHD_CONFIG_PATHS) -> tuple[Path, str] | None:
    """Return (path, content) of the first existing, readable sshd config."""
    for candidate in paths:
        path = Path(candidate)
        try:
            if not path.is_file():
                continue
            content = path.read_text(errors="replace")
        except OSError as e:
            # Unreadable candidates are skipped, not fatal
            logger.warning("%s", ConfigReadError(path, e))
            continue
        return path, content
    return None


def parse_authorized_keys_patterns(content: str) -> list[str]:
    """Extract every AuthorizedKeysFile pattern, in declaration order.

    Values are tokenized like sshd arguments, so a quoted path may contain spaces.
    """
    patterns: list[str] = []
    for line in content.splitlines():
        line = line.split("#", 1)[0]
        m = _DIRECTIVE_RE.match(line)
        if not m:
            continue
        try:
            values = shlex.split(m.group(1), comments=False)
        except ValueError as e:
            logger.warning("Ignoring malformed AuthorizedKeysFile line %r: %s", line.strip(), e)
            continue
        for value in values:
            if value and value.lower() != "none":
                patterns.append(value)
    return patterns


def expand_pattern(pattern: str, username: str, home_dir: str, uid: int | None = None) -> Path:
    """Expand %h, %u, %U and %% in one pass and anchor relative results at home."""

    def _replace(m: re.Match[str]) -> str:
        token = m.group(1)
        if token == "h":
            return home_dir
        if token == "u":
            return username
        if token == "U" and uid is not None:
            return str(uid)
        if token == "%":
            return "%"
        return m.group(0)

    expanded = _TOKEN_RE.sub(_replace, pattern)
    if expanded.startswith("/"):
        return Path(expanded)
    return Path(home_dir) / expanded


def _exists(path: Path) -> bool:
    try:
        return path.exists()
    except OSError as e:
        logger.debug("Cannot stat %s: %s", path, e)
        return False


def resolve_home_dir(user: UserInfo) -> str:
    if user.uid == 0:
        return "/root"
    if user.home_dir:
        return user.home_dir
    return f"/home/{user.username}"


class AuthorizedKeysLocator:
    """Resolves every authorized_keys path per user from sshd configuration."""

    def __init__(self, config_paths: Sequence[str | Path] = SSHD_CONFIG_PATHS):
        self.config_paths = list(config_paths)

    def load_patterns(self) -> list[str]:
        """AuthorizedKeysFile patterns from the first sshd config found, or the default."""
        found = find_sshd_config(self.config_paths)
        if found is None:
            logger.debug("No sshd config found, using default pattern %s", DEFAULT_PATTERN)
            return [DEFAULT_PATTERN]

        path, content = found
        patterns = parse_authorized_keys_patterns(content)
        if not patterns:
            logger.debug("No AuthorizedKeysFile in %s, using default pattern", path)
            return [DEFAULT_PATTERN]

        logger.debug("AuthorizedKeysFile patterns from %s: %s", path, patterns)
        return patterns

    def discover(self, users: Iterable[UserInfo]) -> list[AuthorizedKeysFile]:
        """Return the cross product users x patterns, tagged with existence."""
        patterns = self.load_patterns()
        files: list[AuthorizedKeysFile] = []
        for user in users:
            home = resolve_home_dir(user)
            for pattern in patterns:
                path = expand_pattern(pattern, user.username, home, uid=user.uid)
                files.append(AuthorizedKeysFile(
                    path=path,
                    username=user.username,
                    uid=user.uid,
                    exists=_exists(path),
                    home_dir=home,
                    pattern=pattern,
                ))

        logger.info("Discovered %d authorized_keys files", len(files))
        return files
