"""CLI entry point."""

import logging
import sys

import typer

from kmagent.cli.agent_commands import app as agent_app
from kmagent.cli.key_commands import app as key_app
from kmagent.cli.user_commands import app as user_app
from kmagent.config import settings

app = typer.Typer(
    name="kmagent",
    help="KeyMeister Agent - SSH authorized_keys management.",
    no_args_is_help=True,
)

app.add_typer(agent_app, name="agent", help="Report and sync against the directory service")
app.add_typer(key_app, name="keys", help="authorized_keys inspection and sync")
app.add_typer(user_app, name="users", help="Local accounts")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [kmagent] %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


if __name__ == "__main__":
    app()
