"""Reading and atomically replacing authorized_keys files.

File grammar produced by :func:`render_authorized_keys`::

    file    = MANAGED_MARKER NL HEADER_1 NL HEADER_2 NL NL *(key NL)
    key     = key-type SP key-data [SP comment]

Reads are lossy: any line that does not parse as a key (the header comments,
blank lines, option-prefixed or corrupted entries) is dropped.
"""

from __future__ import annotations

import errno
import logging
import os
import pwd
import secrets
import stat
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from kmagent.core.exceptions import KeyFileError, KeyParseError
from kmagent.core.locator import AuthorizedKeysFile
from kmagent.core.ssh_key import SshKey

logger = logging.getLogger(__name__)

MANAGED_MARKER = "# KeyMeister managed - do not edit manually"
HEADER_LINES = (
    "# This file is managed by KeyMeister Agent",
    "# Manual changes will be overwritten",
)

SSH_DIR_MODE = 0o700
AUTHORIZED_KEYS_MODE = 0o600


def render_authorized_keys(keys: Iterable[SshKey]) -> str:
    """Serialize keys into a complete managed authorized_keys body."""
    lines = [MANAGED_MARKER, *HEADER_LINES, ""]
    lines.extend(key.to_string() for key in keys)
    return "\n".join(lines) + "\n"


def parse_authorized_keys(content: str, source: str | Path = "<string>") -> list[SshKey]:
    """Parse every valid key line, silently dropping everything else."""
    keys: list[SshKey] = []
    for line_num, line in enumerate(content.splitlines(), start=1):
        try:
            key = SshKey.parse(line)
        except KeyParseError:
            logger.debug("Skipped line %d in %s", line_num, source)
            continue
        logger.debug("Parsed SSH key on line %d: %s", line_num, key.fingerprint)
        keys.append(key)
    return keys


def is_managed(content: str) -> bool:
    """True if the content starts with the managed marker."""
    return content.split("\n", 1)[0].rstrip("\r") == MANAGED_MARKER


def lookup_primary_gid(uid: int) -> int:
    """Primary group of the account with ``uid``; falls back to the uid itself."""
    try:
        return pwd.getpwuid(uid).pw_gid
    except KeyError:
        logger.debug("No passwd entry for uid %d, using uid as gid", uid)
        return uid


@dataclass(frozen=True)
class PrivilegeContext:
    """Identity the store acts with. Injected so tests can simulate root."""

    uid: int
    is_root: bool

    @classmethod
    def current(cls) -> PrivilegeContext:
        uid = os.geteuid()
        return cls(uid=uid, is_root=uid == 0)


@dataclass
class WriteResult:
    """Outcome of committing one authorized_keys file."""

    path: Path
    keys_written: int
    ownership_applied: bool = False
    privilege_warning: str | None = None
    dry_run: bool = False


class KeyFileStore:
    """The only component that touches authorized_keys files on disk."""

    dry_run = False

    def __init__(
        self,
        privilege: PrivilegeContext | None = None,
        gid_resolver: Callable[[int], int] = lookup_primary_gid,
    ):
        self.privilege = privilege or PrivilegeContext.current()
        self.gid_resolver = gid_resolver

    def read(self, file: AuthorizedKeysFile) -> list[SshKey]:
        """Return the valid keys currently in ``file``; missing files are empty."""
        try:
            content = file.path.read_text(encoding="utf-8", errors="replace")
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as e:
            raise KeyFileError(file.path, "read", e) from e

        keys = parse_authorized_keys(content, source=file.path)
        logger.info("Read %d valid SSH keys from %s", len(keys), file.path)
        return keys

    def write(self, file: AuthorizedKeysFile, keys: Sequence[SshKey]) -> WriteResult:
        """Replace ``file`` with exactly ``keys``.

        The body goes to a sibling temporary file which gets mode 0600 (and
        its final owner, when privileged) before it is renamed over the
        target, so readers only ever see the old or the complete new file.
        Every step after the directory check works relative to a directory
        fd opened without following symlinks.
        Raises KeyFileError naming the failed step.
        """
        ssh_dir = file.path.parent
        result = WriteResult(path=file.path, keys_written=len(keys))
        gid = self.gid_resolver(file.uid) if self.privilege.is_root else None

        dir_fd = self._prepare_directory(file, ssh_dir, gid)
        try:
            self._commit(file, render_authorized_keys(keys), dir_fd, gid)
        finally:
            os.close(dir_fd)

        if gid is not None:
            result.ownership_applied = True
            logger.info("Set ownership of %s to %d:%d", file.path, file.uid, gid)
        elif file.uid != self.privilege.uid:
            result.privilege_warning = (
                f"Cannot set ownership of {file.path} to UID {file.uid} (not running as root); "
                f"file will be owned by UID {self.privilege.uid}"
            )
            logger.warning("%s", result.privilege_warning)

        logger.info("Updated authorized_keys file: %s (%d keys)", file.path, len(keys))
        return result

    def _commit(self, file: AuthorizedKeysFile, content: str, dir_fd: int, gid: int | None) -> None:
        tmp_name = f".{file.path.name}.{secrets.token_hex(8)}.tmp"
        step = "create temporary file"
        try:
            fd = os.open(
                tmp_name,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW,
                AUTHORIZED_KEYS_MODE,
                dir_fd=dir_fd,
            )
        except OSError as e:
            raise KeyFileError(file.path, step, e) from e

        try:
            step = "write temporary file"
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

                step = "chmod"
                os.fchmod(f.fileno(), AUTHORIZED_KEYS_MODE)

                if gid is not None:
                    step = "chown"
                    os.fchown(f.fileno(), file.uid, gid)

            step = "rename"
            os.replace(tmp_name, file.path.name, src_dir_fd=dir_fd, dst_dir_fd=dir_fd)
        except OSError as e:
            _remove_quietly(tmp_name, dir_fd)
            raise KeyFileError(file.path, step, e) from e

    def _prepare_directory(self, file: AuthorizedKeysFile, ssh_dir: Path, gid: int | None) -> int:
        """Create the parent directory if needed, refuse symlinks and force it to 0700.

        Inside the home every component below the home directory must be a
        real directory. Returns an open fd for ``ssh_dir``.
        """
        within_home = _is_within(ssh_dir, file.home_dir)
        if within_home:
            home = Path(file.home_dir)
            try:
                home.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise KeyFileError(ssh_dir, "create directory", e) from e
            current = home
            for part in ssh_dir.relative_to(home).parts:
                current = current / part
                _ensure_real_directory(current)
        else:
            try:
                if not ssh_dir.is_dir():
                    logger.info("Creating SSH directory: %s", ssh_dir)
                    ssh_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise KeyFileError(ssh_dir, "create directory", e) from e

        try:
            dir_fd = os.open(ssh_dir, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW)
        except OSError as e:
            step = "unsafe directory" if e.errno in (errno.ELOOP, errno.ENOTDIR) else "open directory"
            raise KeyFileError(ssh_dir, step, e) from e

        try:
            step = "chmod directory"
            os.fchmod(dir_fd, SSH_DIR_MODE)

            # Shared directories outside the home (e.g. /etc/ssh/keys) keep their owner
            if gid is not None and within_home:
                step = "chown directory"
                os.fchown(dir_fd, file.uid, gid)
                logger.debug("Set ownership of %s to %d:%d", ssh_dir, file.uid, gid)
        except OSError as e:
            os.close(dir_fd)
            raise KeyFileError(ssh_dir, step, e) from e
        return dir_fd


class DryRunKeyFileStore(KeyFileStore):
    """Reads like KeyFileStore but only records and logs the writes it would do."""

    dry_run = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.planned: list[tuple[AuthorizedKeysFile, list[SshKey]]] = []

    def write(self, file: AuthorizedKeysFile, keys: Sequence[SshKey]) -> WriteResult:
        self.planned.append((file, list(keys)))
        logger.info("DRY RUN: Would update %s (%d keys)", file.path, len(keys))
        if self.privilege.is_root:
            logger.info(
                "DRY RUN: Would set ownership of %s to %d:%d",
                file.path, file.uid, self.gid_resolver(file.uid),
            )
        elif file.uid != self.privilege.uid:
            logger.info("DRY RUN: Would warn about ownership (not running as root)")
        return WriteResult(path=file.path, keys_written=len(keys), dry_run=True)


def _ensure_real_directory(path: Path) -> None:
    """Create ``path`` as a 0700 directory, or check an existing one is not a symlink."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        logger.info("Creating SSH directory: %s", path)
        try:
            os.mkdir(path, SSH_DIR_MODE)
            st = os.lstat(path)
        except OSError as e:
            raise KeyFileError(path, "create directory", e) from e
    except OSError as e:
        raise KeyFileError(path, "create directory", e) from e

    if stat.S_ISLNK(st.st_mode):
        raise KeyFileError(path, "unsafe directory", "refusing to follow a symlink")
    if not stat.S_ISDIR(st.st_mode):
        raise KeyFileError(path, "unsafe directory", "not a directory")


def _is_within(path: Path, home_dir: str) -> bool:
    if not home_dir:
        return False
    home = Path(home_dir)
    return path == home or home in path.parents


def _remove_quietly(name: str, dir_fd: int) -> None:
    try:
        os.unlink(name, dir_fd=dir_fd)
    except OSError as e:
        logger.debug("Could not remove temporary file %s: %s", name, e)
