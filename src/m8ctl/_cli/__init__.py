"""m8ctl CLI - Command line interface for the m8 control plane.

Usage:
    m8ctl config init --server-url <url> [--force]
    m8ctl config view

    m8ctl auth login [--force]
    m8ctl auth status
    m8ctl auth logout

    m8ctl get cluster-credentials <cluster> <role>

Configuration:
    Use --config <path> or set M8CTL_CONFIG=<path> to use a specific config
    file (default ~/.m8ctl/config.json).
"""

import logging
from pathlib import Path

import typer

from m8ctl._cli import auth, config, get
from m8ctl._cli._common import CLIContext

# Main CLI app
app = typer.Typer(
    name="m8ctl",
    help="m8ctl - CLI of the m8 multi-cluster control plane",
    no_args_is_help=True,
)

# Add subcommands
app.add_typer(auth.app, name="auth")
app.add_typer(config.app, name="config")
app.add_typer(get.app, name="get")


@app.command()
def version() -> None:
    """Show the m8ctl version."""
    from m8ctl import __version__

    typer.echo(f"m8ctl {__version__}")


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to an explicit m8ctl config file",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output to stderr",
    ),
) -> None:
    """m8ctl - CLI of the m8 multi-cluster control plane.

    Use 'm8ctl config init' to point m8ctl at a control plane.
    Use 'm8ctl auth login' to authenticate.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    ctx.obj = CLIContext(config_file=config_file)


if __name__ == "__main__":
    app()
