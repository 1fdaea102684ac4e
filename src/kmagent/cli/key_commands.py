"""authorized_keys CLI commands."""

from __future__ import annotations

import json
from pathlib import Path

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kmagent.config import settings
from kmagent.core.agent import build_engine
from kmagent.core.exceptions import KeyParseError, UserEnumerationError
from kmagent.core.fingerprint import calculate_md5_fingerprint, detect_key_type
from kmagent.core.key_store import is_managed, parse_authorized_keys
from kmagent.core.locator import AuthorizedKeysLocator
from kmagent.core.reconciler import KeySyncStats
from kmagent.core.ssh_key import SshKey
from kmagent.core.users import UserInfo, collect_users
from kmagent.schemas.assignment import KeyAssignment, KeyAssignmentsResponse

console = Console()
app = typer.Typer(no_args_is_help=True)

_assignment_list = TypeAdapter(list[KeyAssignment])


def load_local_users() -> list[UserInfo]:
    try:
        return collect_users(
            settings.passwd_path,
            min_uid=settings.min_uid,
            include=settings.include_users,
            exclude=settings.exclude_users,
        )
    except UserEnumerationError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def print_sync_stats(stats: KeySyncStats, as_json: bool, dry_run: bool) -> None:
    if as_json:
        typer.echo(json.dumps(stats.as_dict(), indent=2))
        return

    title = "SSH Key Sync (dry run)" if dry_run else "SSH Key Sync"
    table = Table(title=title)
    table.add_column("User")
    table.add_column("File")
    table.add_column("Added")
    table.add_column("Removed")
    table.add_column("Status")

    for result in stats.file_results:
        if result.error:
            status = f"[red]error: {escape(result.error)}[/red]"
        elif result.updated:
            status = "[yellow]would update[/yellow]" if dry_run else "[green]updated[/green]"
        else:
            status = "unchanged"
        if result.errors and not result.error:
            status += f" [red]({result.errors} invalid assignments)[/red]"
        table.add_row(
            result.username,
            str(result.path),
            str(len(result.added)),
            str(len(result.removed)),
            status,
        )

    console.print(table)
    console.print(
        f"users={stats.users_processed} added={stats.keys_added} "
        f"removed={stats.keys_removed} files_updated={stats.files_updated} "
        f"errors={stats.errors}"
    )


@app.command("sync")
def sync_keys(
    assignments_file: Path = typer.Argument(..., help="JSON file with key assignments"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change without writing"),
    as_json: bool = typer.Option(False, "--json", help="Print statistics as JSON"),
):
    """Reconcile authorized_keys files against assignments read from a file."""
    try:
        data = json.loads(assignments_file.read_text())
        if isinstance(data, dict):
            assignments = KeyAssignmentsResponse.model_validate(data).assignments or []
        else:
            assignments = _assignment_list.validate_python(data)
    except (OSError, ValueError, ValidationError) as e:
        console.print(f"[red]Cannot load assignments from {escape(str(assignments_file))}: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    users = load_local_users()
    stats = build_engine(settings).sync(users, assignments, dry_run=dry_run)
    print_sync_stats(stats, as_json, dry_run)


@app.command("locate")
def locate_files(
    user: str | None = typer.Option(None, "--user", "-u", help="Only show this user"),
):
    """Show every authorized_keys file sshd would consult."""
    users = load_local_users()
    if user:
        users = [u for u in users if u.username == user]

    files = AuthorizedKeysLocator(settings.sshd_config_paths).discover(users)
    if not files:
        console.print("[yellow]No authorized_keys locations found.[/yellow]")
        return

    table = Table(title="authorized_keys Locations")
    table.add_column("User")
    table.add_column("UID", style="dim")
    table.add_column("Pattern")
    table.add_column("Path")
    table.add_column("Exists")

    for f in files:
        table.add_row(f.username, str(f.uid), f.pattern, str(f.path), "Yes" if f.exists else "No")

    console.print(table)


@app.command("show")
def show_file(
    path: Path = typer.Argument(..., help="Path to an authorized_keys file"),
):
    """List the valid keys in an authorized_keys file."""
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        console.print(f"[red]Cannot read {escape(str(path))}: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    keys = parse_authorized_keys(content, source=path)
    console.print(f"[bold]{escape(str(path))}[/bold] (managed: {'yes' if is_managed(content) else 'no'})")
    if not keys:
        console.print("[yellow]No valid keys found.[/yellow]")
        return

    table = Table()
    table.add_column("#", style="dim")
    table.add_column("Type")
    table.add_column("Fingerprint (SHA256)")
    table.add_column("Comment")

    for i, key in enumerate(keys, start=1):
        table.add_row(str(i), key.key_type, key.fingerprint, escape(key.comment or "-"))

    console.print(table)


@app.command("fingerprint")
def fingerprint(
    line: str = typer.Argument(..., help='Public key line, e.g. "ssh-ed25519 AAAA... user@host"'),
):
    """Validate a public key line and print its fingerprints."""
    try:
        key = SshKey.parse(line)
    except KeyParseError as e:
        console.print(f"[red]Invalid key: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    console.print(f"  SHA256:  {key.fingerprint}")
    console.print(f"  MD5:     {calculate_md5_fingerprint(line) or '-'}")
    console.print(f"  Type:    {key.key_type} ({detect_key_type(line)})")
    console.print(f"  Comment: {escape(key.comment or '-')}")
