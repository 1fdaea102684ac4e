"""Per-user, per-file reconciliation of authorized_keys against key assignments."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path

from kmagent.core.exceptions import KeyFileError, KeyParseError
from kmagent.core.key_store import DryRunKeyFileStore, KeyFileStore, WriteResult
from kmagent.core.locator import AuthorizedKeysFile, AuthorizedKeysLocator
from kmagent.core.ssh_key import SshKey
from kmagent.core.users import UserInfo
from kmagent.schemas.assignment import KeyAssignment

logger = logging.getLogger(__name__)


@dataclass
class FileSyncResult:
    """Diagnostics for one authorized_keys file in a sync pass."""

    username: str
    path: Path
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: bool = False
    errors: int = 0
    error: str | None = None
    write: WriteResult | None = None


@dataclass
class KeySyncStats:
    """Counters for one sync pass. Nothing is persisted between passes."""

    users_processed: int = 0
    keys_added: int = 0
    keys_removed: int = 0
    files_updated: int = 0
    errors: int = 0
    file_results: list[FileSyncResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        data = asdict(self)
        data.pop("file_results")
        return data


def assignment_to_ssh_key(assignment: KeyAssignment) -> SshKey:
    """Re-validate an assignment's public key. Raises KeyParseError."""
    return SshKey.parse(assignment.public_key)


def diff_keys(existing: Sequence[SshKey], target: Sequence[SshKey]) -> tuple[list[SshKey], list[SshKey]]:
    """Return (to_add, to_remove) by fingerprint, each in source order."""
    existing_fps = {key.fingerprint for key in existing}
    target_fps = {key.fingerprint for key in target}
    to_add = [key for key in target if key.fingerprint not in existing_fps]
    to_remove = [key for key in existing if key.fingerprint not in target_fps]
    return to_add, to_remove


class ReconciliationEngine:
    """Converges authorized_keys files on disk to the assigned key sets."""

    def __init__(
        self,
        locator: AuthorizedKeysLocator,
        store: KeyFileStore,
        dry_run_store: KeyFileStore | None = None,
    ):
        self.locator = locator
        self.store = store
        self.dry_run_store = dry_run_store or DryRunKeyFileStore(
            store.privilege, store.gid_resolver
        )

    def sync(
        self,
        users: Sequence[UserInfo],
        assignments: Iterable[KeyAssignment],
        dry_run: bool = False,
    ) -> KeySyncStats:
        """Reconcile every discovered authorized_keys file; never raises for per-file failures."""
        stats = KeySyncStats()
        writer = self.dry_run_store if dry_run else self.store

        # Group assignments by username
        by_user: dict[str, list[KeyAssignment]] = {}
        for assignment in assignments:
            by_user.setdefault(assignment.username, []).append(assignment)

        known = {user.username for user in users}
        for username in sorted(set(by_user) - known):
            logger.warning(
                "Ignoring %d key assignments for unknown local user %s",
                len(by_user[username]), username,
            )

        for file in self.locator.discover(users):
            stats.users_processed += 1
            result = self._sync_file(file, by_user.get(file.username, []), writer)
            stats.file_results.append(result)
            stats.errors += result.errors
            if result.error is not None:
                continue
            stats.keys_added += len(result.added)
            stats.keys_removed += len(result.removed)
            if result.updated:
                stats.files_updated += 1

        logger.info(
            "SSH key sync completed: %d users, %d keys added, %d keys removed, "
            "%d files updated, %d errors",
            stats.users_processed, stats.keys_added, stats.keys_removed,
            stats.files_updated, stats.errors,
        )
        return stats

    def _sync_file(
        self,
        file: AuthorizedKeysFile,
        assignments: Sequence[KeyAssignment],
        writer: KeyFileStore,
    ) -> FileSyncResult:
        result = FileSyncResult(username=file.username, path=file.path)

        target: list[SshKey] = []
        seen: set[str] = set()
        for assignment in assignments:
            try:
                key = assignment_to_ssh_key(assignment)
            except KeyParseError as e:
                logger.warning(
                    "Invalid key assignment %s for %s: %s",
                    assignment.assignment_id, file.username, e,
                )
                result.errors += 1
                continue
            if key.fingerprint in seen:
                continue
            seen.add(key.fingerprint)
            target.append(key)

        try:
            existing = writer.read(file)
            to_add, to_remove = diff_keys(existing, target)
            result.added = [key.fingerprint for key in to_add]
            result.removed = [key.fingerprint for key in to_remove]

            if not to_add and not to_remove:
                logger.info("No changes needed for user %s (%s)", file.username, file.path)
                return result

            _log_changes(file, to_add, to_remove, writer.dry_run)
            result.write = writer.write(file, target)
            result.updated = True
        except (KeyFileError, OSError) as e:
            logger.error("Failed to sync keys for user %s: %s", file.username, e)
            result.error = str(e)
            result.errors += 1

        return result


def _log_changes(
    file: AuthorizedKeysFile, to_add: Sequence[SshKey], to_remove: Sequence[SshKey], dry_run: bool
) -> None:
    if to_add:
        action = "Would add" if dry_run else "Adding"
        logger.info("%s %d keys for user %s", action, len(to_add), file.username)
        for key in to_add:
            logger.info("  + %s", key.fingerprint)
    if to_remove:
        action = "Would remove" if dry_run else "Removing"
        logger.info("%s %d keys for user %s", action, len(to_remove), file.username)
        for key in to_remove:
            logger.info("  - %s", key.fingerprint)
