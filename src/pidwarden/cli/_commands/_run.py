# pyright: reportUnusedCallResult=false
# ruff: noqa: TC003  # Path needed at runtime for cyclopts parameter parsing
"""pidwarden run command - supervises the configured services."""

from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import anyio
import uvicorn
from cyclopts import App, Parameter
from fastapi import FastAPI
from rich.console import Console

from pidwarden.exceptions import PIDStoreError, RegistrationError
from pidwarden.supervisor import (
    ConsoleEventSink,
    FileLogStore,
    LoggingEventSink,
    PIDStore,
    SubprocessLauncher,
    Supervisor,
    create_control_router,
)
from pidwarden.utils import create_supervisor_logger

from ._shared import DEFAULT_CONFIG_PATH, ExitCode, exit_with_error, load_config_or_exit

if TYPE_CHECKING:
    from pidwarden.config import Config

app = App(
    name="run",
    help="Supervise the configured services until interrupted.",
    help_on_error=True,
)


def create_control_app(supervisor: Supervisor) -> FastAPI:
    """Create the FastAPI control application.

    Creates a minimal FastAPI app with the supervisor control router
    mounted for managing services.

    Args:
        supervisor: The Supervisor instance to control.

    Returns:
        A FastAPI application with supervisor control endpoints.
    """
    app = FastAPI(
        title="pidwarden control",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.include_router(create_control_router(supervisor))
    return app


def build_supervisor(config: "Config", *, console: Console | None = None) -> Supervisor:
    """Wire a Supervisor from a loaded configuration.

    Raises:
        RegistrationError: If a service is rejected.
        PIDStoreError: If the PID store directory cannot be used.
    """
    logger = create_supervisor_logger(
        level=config.logging.level.value,
        log_format=config.logging.format.value,  # type: ignore[arg-type]
        log_file=str(config.log_file) if config.log_file is not None else "",
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )
    try:
        store = PIDStore(config.state_dir, logger=logger)
    except OSError as e:
        msg = f"Cannot use PID store directory {config.state_dir}: {e}"
        raise PIDStoreError(msg, path=config.state_dir, operation="open", cause=e) from e

    return Supervisor(
        config.records(),
        store=store,
        launcher=SubprocessLauncher(config.log_dir, logger=logger),
        log_store=FileLogStore(config.log_dir),
        sinks=[ConsoleEventSink(console), LoggingEventSink(logger)],
        status_probe_timeout=config.supervisor.status_probe_timeout,
        stop_on_exit=config.supervisor.stop_on_exit,
        logger=logger,
    )


async def run_supervisor(
    supervisor: Supervisor,
    *,
    autostart: list[str],
    control_host: str | None = None,
    control_port: int = 0,
) -> None:
    """Run the supervisor, plus the control API when a host is given.

    Args:
        supervisor: The wired supervisor.
        autostart: Services to start once recovery is done.
        control_host: Interface for the control API, or None to disable it.
        control_port: Port for the control API.
    """
    if control_host is None:
        await supervisor.run(autostart=autostart)
        return

    uvicorn_config = uvicorn.Config(
        app=create_control_app(supervisor),
        host=control_host,
        port=control_port,
        log_level="warning",
        access_log=False,
    )
    control_server = uvicorn.Server(uvicorn_config)

    async def serve_control() -> None:
        await control_server.serve()
        # uvicorn may consume the interrupt itself
        await supervisor.shutdown()

    async with anyio.create_task_group() as tg:
        tg.start_soon(serve_control)

        # Give the control server a moment to start
        await anyio.sleep(0.1)

        # Run the supervisor (blocks until shutdown)
        await supervisor.run(autostart=autostart)

        # Supervisor has shut down, stop the control server
        control_server.should_exit = True


@app.default
def run(
    *,
    config: Annotated[
        Path,
        Parameter(name="--config", help="Path to the configuration file."),
    ] = Path(DEFAULT_CONFIG_PATH),
    no_autostart: Annotated[
        bool,
        Parameter(help="Only adopt already running services; start nothing."),
    ] = False,
    no_control: Annotated[
        bool,
        Parameter(help="Do not serve the control API even if enabled in config."),
    ] = False,
) -> None:
    """Supervise the configured services.

    Recovers services recorded in the PID store, starts the services marked
    `autostart`, then restarts crashed, stalled or overloaded services until
    SIGINT or SIGTERM arrives.
    """
    loaded = load_config_or_exit(config)
    console = Console()

    try:
        supervisor = build_supervisor(loaded, console=console)
    except RegistrationError as e:
        exit_with_error(str(e), ExitCode.VALIDATION_ERROR)
    except PIDStoreError as e:
        exit_with_error(str(e), ExitCode.IO_ERROR)

    control_host: str | None = None
    if loaded.control.enabled and not no_control:
        control_host = loaded.control.host
        console.print(
            f"Control API on http://{loaded.control.host}:{loaded.control.port}/supervisor",
            highlight=False,
        )

    anyio.run(
        lambda: run_supervisor(
            supervisor,
            autostart=[] if no_autostart else loaded.autostart(),
            control_host=control_host,
            control_port=loaded.control.port,
        )
    )
