"""Configuration commands for m8ctl CLI.

The config file (default ~/.m8ctl/config.json) holds the gateway address and
the owner and expiry of stored credentials. Tokens are kept in the keyring.
"""

import typer

from m8ctl._cli._common import exit_on_error, get_config_manager
from m8ctl.config import M8Config

app = typer.Typer(help="Manage m8ctl configuration")


@app.command("init")
def init_config(
    ctx: typer.Context,
    server_url: str = typer.Option(
        ...,
        "--server-url",
        "-u",
        help="URL of the control plane gateway",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing configuration",
    ),
) -> None:
    """Create a new m8ctl configuration."""
    manager = get_config_manager(ctx)
    with exit_on_error():
        manager.init_config(M8Config(server=server_url.rstrip("/")), force=force)

    typer.echo(f"Config saved to {manager.config_path}")


@app.command("view")
def view_config(ctx: typer.Context) -> None:
    """Show the current configuration (without tokens)."""
    manager = get_config_manager(ctx)
    with exit_on_error():
        config = manager.load_config()

    typer.echo(f"{manager.config_path}:")
    typer.echo(config.to_json())
