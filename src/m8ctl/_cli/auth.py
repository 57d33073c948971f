"""Authentication commands for m8ctl CLI.

Login happens in the browser against the identity provider of the control
plane. The resulting access token is stored in the OS keyring; its owner and
expiry are stored in the config file.
"""

import typer

from m8ctl._cli._common import exit_on_error, get_config_manager
from m8ctl.auth import retry_on_auth_fail
from m8ctl.config import is_soft_expired

app = typer.Typer(help="Authentication commands for the m8 control plane")


@app.command()
def login(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Log in again even if the current token is still valid",
    ),
) -> None:
    """Login to the control plane via browser.

    Opens your browser to authenticate with the identity provider. Nothing
    happens if you already hold a token that is valid for at least five more
    minutes, unless --force is given.
    """
    manager = get_config_manager(ctx)
    with exit_on_error():
        auth = retry_on_auth_fail(
            manager,
            lambda _deadline: manager.config.auth_information,
            force=force,
        )

    assert auth is not None
    typer.echo(f"Logged in to {manager.config.server} as '{auth.username}'")
    typer.echo(f"Token expiry: {auth.expiry}")


@app.command()
def logout(ctx: typer.Context) -> None:
    """Logout and clear stored credentials."""
    manager = get_config_manager(ctx)
    with exit_on_error():
        manager.load_config()
        cleared = manager.clear_auth_information()
        if cleared:
            manager.save_config()

    if cleared:
        typer.echo("Credentials cleared successfully.")
    else:
        typer.echo("No credentials found.")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show if and against which server you are authenticated."""
    manager = get_config_manager(ctx)
    with exit_on_error():
        config = manager.load_config()

    auth = config.auth_information
    authenticated = auth is not None and auth.has_token()

    typer.echo(f"Config file: {manager.config_path}")
    typer.echo(f"Authenticated: {authenticated}")
    if authenticated:
        assert auth is not None
        typer.echo(f"Server: {config.server}")
        typer.echo(f"User: {auth.username}")
        typer.echo(f"Token expiry: {auth.expiry}")
        typer.echo(f"Token expired: {is_soft_expired(auth)}")
    else:
        typer.echo("")
        typer.echo("Run 'm8ctl auth login' to authenticate")
