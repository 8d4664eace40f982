# ruff: noqa: TC003  # Path needed at runtime for cyclopts parameter parsing
"""pidwarden logs command - prints captured service output."""

from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter
from rich.console import Console

from pidwarden.supervisor import FileLogStore

from ._shared import (
    DEFAULT_CONFIG_PATH,
    ExitCode,
    exit_with_error,
    load_config_or_exit,
    parse_since,
)

app = App(
    name="logs",
    help="Print a service's captured output.",
    help_on_error=True,
)


@app.default
def logs(
    name: Annotated[str, Parameter(help="Service name.")],
    /,
    *,
    since: Annotated[
        str | None,
        Parameter(
            help=(
                "ISO 8601 timestamp or age such as 10m or 2h. Lines without a "
                "leading timestamp are dated by the closest stamped line above them."
            )
        ),
    ] = None,
    config: Annotated[
        Path,
        Parameter(name="--config", help="Path to the configuration file."),
    ] = Path(DEFAULT_CONFIG_PATH),
) -> None:
    """Print output lines a service wrote at or after `--since`.

    Only lines that start with an ISO 8601 timestamp carry their own time.
    Unstamped output inherits the previous stamp, which for a worker that
    never stamps its lines is the launch banner of its current run.
    """
    loaded = load_config_or_exit(config)
    if name not in {service.name for service in loaded.services}:
        exit_with_error(f"Service '{name}' not found", ExitCode.NOT_FOUND)

    try:
        since_dt = parse_since(since)
    except ValueError as e:
        exit_with_error(f"Invalid --since value: {e}", ExitCode.VALIDATION_ERROR)

    console = Console()
    for line in FileLogStore(loaded.log_dir).lines_since(name, since_dt):
        console.print(line, markup=False, highlight=False, soft_wrap=True)
