"""pidwarden CLI commands."""
# pyright: reportUnusedCallResult=false

from typing import TYPE_CHECKING

from ._logs import app as logs_app
from ._run import app as run_app
from ._shared import (
    ExitCode,
    FormattableData,
    exit_with_error,
    format_json,
    get_error_console,
    load_config_or_exit,
    parse_since,
)
from ._status import app as status_app

if TYPE_CHECKING:
    from cyclopts import App

__all__ = [
    "ExitCode",
    "FormattableData",
    "exit_with_error",
    "format_json",
    "get_error_console",
    "load_config_or_exit",
    "logs_app",
    "parse_since",
    "register_commands",
    "run_app",
    "status_app",
]


def register_commands(app: "App") -> None:
    """Register all pidwarden commands with the app."""
    app.command(run_app)
    app.command(status_app)
    app.command(logs_app)
