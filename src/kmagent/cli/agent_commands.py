"""Agent cycle CLI commands."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.markup import escape

from kmagent.cli.key_commands import print_sync_stats
from kmagent.config import settings
from kmagent.core.agent import build_engine, run_agent_cycle
from kmagent.core.api_client import KeyMeisterClient
from kmagent.core.exceptions import ApiError, UserEnumerationError
from kmagent.core.reconciler import KeySyncStats

console = Console()
app = typer.Typer(no_args_is_help=True)


@app.command("run")
def run(
    endpoint: str | None = typer.Option(None, "--endpoint", help="Server endpoint, e.g. http://localhost:3000"),
    token: str | None = typer.Option(None, "--token", help="API token for authentication"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without making changes"),
    as_json: bool = typer.Option(False, "--json", help="Print statistics as JSON"),
):
    """Report to the directory service and reconcile authorized_keys files.

    Runs once per invocation; schedule it with a systemd timer or cron.
    """
    endpoint = endpoint or settings.endpoint
    token = token or settings.token
    if not token:
        console.print("[red]No API token configured (use --token or KMAGENT_TOKEN).[/red]")
        raise typer.Exit(1)

    console.print(f"KeyMeister Agent v{settings.agent_version}")
    console.print(f"Endpoint: {escape(endpoint)}")

    try:
        stats = asyncio.run(_run(endpoint, token, dry_run))
    except (ApiError, UserEnumerationError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    print_sync_stats(stats, as_json, dry_run)


async def _run(endpoint: str, token: str, dry_run: bool) -> KeySyncStats:
    async with KeyMeisterClient(
        endpoint,
        token,
        agent_version=settings.agent_version,
        timeout=settings.request_timeout,
        retry_delay=settings.retry_delay,
    ) as client:
        return await run_agent_cycle(client, build_engine(settings), settings, dry_run=dry_run)
