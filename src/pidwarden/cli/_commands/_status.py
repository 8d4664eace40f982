# ruff: noqa: TC003  # Path needed at runtime for cyclopts parameter parsing
"""pidwarden status command - offline view of supervised services."""

from pathlib import Path
from typing import Annotated, Any

import pendulum
from cyclopts import App, Parameter
from rich.console import Console
from rich.table import Table

from pidwarden.supervisor import Liveness, LivenessProber, PIDKind, PIDStore

from ._shared import DEFAULT_CONFIG_PATH, format_json, load_config_or_exit

app = App(
    name="status",
    help="Show what the PID store says is running.",
    help_on_error=True,
)

_STATE_STYLES = {
    "running": "green",
    "dead": "red",
    "stopped": "yellow",
}


def _describe(name: str, store: PIDStore, prober: LivenessProber) -> dict[str, Any]:
    entry = store.read(name, PIDKind.PRIMARY, fresh=True)
    if entry is None:
        return {
            "name": name,
            "state": "stopped",
            "pid": None,
            "uptime": None,
            "confidence": "normal",
        }

    liveness = prober.probe(entry)
    uptime: float | None = None
    if liveness != Liveness.DEAD:
        try:
            recorded = pendulum.parse(entry.recorded_at)
        except ValueError:
            recorded = None
        if isinstance(recorded, pendulum.DateTime):
            uptime = round((pendulum.now("UTC") - recorded).total_seconds(), 1)

    return {
        "name": name,
        "state": "dead" if liveness == Liveness.DEAD else "running",
        "pid": entry.pid,
        "uptime": uptime,
        "confidence": "degraded" if liveness == Liveness.AMBIGUOUS else "normal",
    }


def collect_status(state_dir: Path, names: list[str]) -> list[dict[str, Any]]:
    """Describe configured services, plus any unconfigured store records.

    Only reads the store; safe to run beside a live supervisor.
    """
    store = PIDStore(state_dir, create=False)
    prober = LivenessProber()
    extra = sorted(store.list_services() - set(names))
    return [_describe(name, store, prober) for name in [*names, *extra]]


@app.default
def status(
    *,
    config: Annotated[
        Path,
        Parameter(name="--config", help="Path to the configuration file."),
    ] = Path(DEFAULT_CONFIG_PATH),
    json: Annotated[
        bool,
        Parameter(name="--json", help="Print JSON instead of a table."),
    ] = False,
) -> None:
    """Show recorded services and whether their processes are alive.

    Works from the PID store alone, so it reports services of a supervisor
    running in another process, or of one that has exited.
    """
    loaded = load_config_or_exit(config)
    rows = collect_status(loaded.state_dir, [service.name for service in loaded.services])
    console = Console()

    if json:
        console.print(format_json(rows), markup=False, highlight=False, soft_wrap=True)
        return

    table = Table(title="pidwarden services")
    table.add_column("Service", style="bold")
    table.add_column("State")
    table.add_column("PID", justify="right")
    table.add_column("Uptime", justify="right")
    table.add_column("Confidence")

    for row in rows:
        state = row["state"]
        table.add_row(
            row["name"],
            f"[{_STATE_STYLES.get(state, 'white')}]{state}[/]",
            str(row["pid"]) if row["pid"] is not None else "-",
            f"{row['uptime']:.0f}s" if row["uptime"] is not None else "-",
            row["confidence"],
        )

    console.print(table)
