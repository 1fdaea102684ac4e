"""Local account CLI commands."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from kmagent.cli.key_commands import load_local_users

console = Console()
app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_users():
    """List the local accounts whose keys are managed."""
    users = load_local_users()
    if not users:
        console.print("[yellow]No users found.[/yellow]")
        return

    table = Table(title="Managed Users")
    table.add_column("Username")
    table.add_column("UID", style="dim")
    table.add_column("Home")
    table.add_column("Shell")
    table.add_column("Disabled")

    for user in users:
        table.add_row(
            user.username,
            str(user.uid),
            user.home_dir or "-",
            user.shell or "-",
            "Yes" if user.disabled else "No",
        )

    console.print(table)
