"""Shared helpers for m8ctl CLI commands."""

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import typer

from m8ctl.config import ConfigManager
from m8ctl.exceptions import ExhaustedRetryError, M8Error, UnauthenticatedError


@dataclass
class CLIContext:
    """Global options, stored on the typer context object."""

    config_file: Path | None = None


def get_config_manager(ctx: typer.Context) -> ConfigManager:
    obj = ctx.obj if isinstance(ctx.obj, CLIContext) else CLIContext()
    return ConfigManager(obj.config_file)


def _report(error: M8Error) -> None:
    typer.echo(f"Error: {error}", err=True)
    if error.hint:
        typer.echo(f"  {error.hint}", err=True)


@contextmanager
def exit_on_error(retried: bool = False) -> Iterator[None]:
    """Report m8ctl errors on stderr and exit with status 1.

    Args:
        retried: The wrapped code ran under the retry wrapper, so an
            UnauthenticatedError means the retry was already spent.
    """
    try:
        yield
    except UnauthenticatedError as e:
        if retried:
            _report(
                ExhaustedRetryError(f"Still not authenticated after logging in again: {e}")
            )
        else:
            _report(e)
        raise typer.Exit(1)
    except M8Error as e:
        _report(e)
        raise typer.Exit(1)
