"""The command-line interface for pidwarden."""

from cyclopts import App
from rich.console import Console

from ._commands import register_commands

_HELP = "Keep long-running processes alive, honest and restartable."


def create_app(
    console: Console | None = None,
    error_console: Console | None = None,
    *,
    exit_on_error: bool = True,
) -> App:
    if console is None:
        console = Console()
    if error_console is None:
        error_console = Console(stderr=True)
    app = App(
        name="pidwarden",
        help=_HELP,
        help_on_error=True,
        console=console,
        error_console=error_console,
        exit_on_error=exit_on_error,
    )
    register_commands(app)
    return app


app = create_app()


def main() -> None:
    """Default entrypoint for the `pidwarden` CLI."""
    app()
