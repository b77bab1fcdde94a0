"""CLI error handling: wrap commands to report errors instead of silent failures."""

from functools import wraps

import httpx
import typer
from click.exceptions import Exit

from grotto.errors import ClaimConflict, GrottoError


def error_feedback(f):
    """Wrap command to catch exceptions and report them before exiting.

    Domain errors, bad input, file and daemon connection errors are echoed to
    stderr before exiting with status 1.
    """

    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (SystemExit, Exit):
            raise
        except ClaimConflict as e:
            typer.echo(f"Conflict: {e}", err=True)
            raise typer.Exit(1) from e
        except GrottoError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from e
        except (ValueError, KeyError, TypeError) as e:
            typer.echo(f"Invalid input: {e}", err=True)
            raise typer.Exit(1) from e
        except httpx.HTTPError as e:
            typer.echo(f"Daemon error: {e}", err=True)
            raise typer.Exit(1) from e
        except OSError as e:
            typer.echo(f"File error: {e}", err=True)
            raise typer.Exit(1) from e

    return wrapper
