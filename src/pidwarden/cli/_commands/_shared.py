# pyright: reportExplicitAny=false
"""Shared CLI utilities for commands.

This module provides common utilities used across CLI command implementations:
- Standardized exit codes
- JSON output formatting
- Console utilities for error handling
- Configuration loading with CLI error reporting
"""

import re
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Never

import pendulum

from pidwarden.config import load_config
from pidwarden.exceptions import ConfigLoadError

if TYPE_CHECKING:
    from pathlib import Path

    from rich.console import Console

    from pidwarden.config import Config

# Type alias for formattable data - uses Any to match library signatures
FormattableData = dict[str, Any] | list[Any]

DEFAULT_CONFIG_PATH = "pidwarden.toml"

_RELATIVE_RE = re.compile(r"^(\d+)\s*([smhd])$")
_RELATIVE_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ExitCode",
    "FormattableData",
    "exit_with_error",
    "format_json",
    "get_error_console",
    "load_config_or_exit",
    "parse_since",
]


class ExitCode(IntEnum):
    """Standard exit codes for pidwarden CLI commands."""

    SUCCESS = 0
    LOAD_ERROR = 1
    VALIDATION_ERROR = 2
    NOT_FOUND = 3
    IO_ERROR = 4
    INTERNAL_ERROR = 5


def format_json(data: FormattableData, *, indent: bool = True) -> str:
    """Format data as JSON.

    Args:
        data: Data to format as JSON.
        indent: Whether to pretty-print with indentation.

    Returns:
        JSON-formatted string representation.
    """
    import orjson

    options = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(data, option=options).decode("utf-8")


def get_error_console() -> "Console":
    """Get a Rich console configured for error output to stderr.

    Returns:
        Console instance writing to stderr.
    """
    from rich.console import Console

    return Console(stderr=True)


def exit_with_error(
    message: str,
    code: ExitCode = ExitCode.INTERNAL_ERROR,
    *,
    console: "Console | None" = None,
) -> Never:
    """Print an error message and exit with the specified code.

    Args:
        message: The error message to display.
        code: The exit code to use (defaults to INTERNAL_ERROR).
        console: Optional Rich console for output. If not provided,
            a new stderr console will be created.

    Raises:
        SystemExit: Always raised with the specified exit code.
    """
    if console is None:
        console = get_error_console()

    console.print(f"[red]Error:[/red] {message}", highlight=False)
    raise SystemExit(code)


def load_config_or_exit(path: "Path") -> "Config":
    """Load a configuration file, exiting with LOAD_ERROR on failure."""
    try:
        return load_config(path)
    except ConfigLoadError as e:
        location = ""
        if e.line is not None:
            location = f" (line {e.line}, column {e.column})"
        exit_with_error(f"{e}{location}", ExitCode.LOAD_ERROR)


def parse_since(value: str | None) -> pendulum.DateTime:
    """Parse a `--since` value.

    Accepts an ISO 8601 timestamp or a relative age such as `30s`, `10m`,
    `2h` or `1d`. None means the beginning of time.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if value is None:
        return pendulum.DateTime(1970, 1, 1, tzinfo=pendulum.UTC)

    match = _RELATIVE_RE.match(value.strip())
    if match is not None:
        amount, unit = int(match.group(1)), _RELATIVE_UNITS[match.group(2)]
        return pendulum.now("UTC").subtract(**{unit: amount})

    parsed = pendulum.parse(value, tz="UTC")
    if not isinstance(parsed, pendulum.DateTime):
        msg = f"not a date and time: {value!r}"
        raise ValueError(msg)  # noqa: TRY004
    return parsed
