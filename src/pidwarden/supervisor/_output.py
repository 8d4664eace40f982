"""Event sink implementations for the supervisor system.

This module provides concrete implementations of the EventSink protocol
for displaying and recording state transitions.
"""

from typing import TYPE_CHECKING, final

from rich.console import Console
from rich.style import Style
from rich.text import Text

from pidwarden.utils import create_null_logger

from ._models import ServiceState

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from ._models import StatusEvent


@final
class ConsoleEventSink:
    """Event sink that prints transitions to the console.

    Formats events as `[name] OLD -> NEW (pid=N) verdict - message` with
    the new state color coded.
    """

    __slots__ = ("_console", "_state_styles")

    def __init__(self, console: Console | None = None) -> None:
        """Initialize the event sink.

        Args:
            console: Rich Console instance for output. If None, creates a new one.
        """
        self._console = console or Console()
        self._state_styles: dict[ServiceState, Style] = {
            ServiceState.STOPPED: Style(color="yellow"),
            ServiceState.STARTING: Style(color="cyan", dim=True),
            ServiceState.RUNNING: Style(color="green", bold=True),
            ServiceState.DEGRADED: Style(color="red"),
            ServiceState.RESTARTING: Style(color="cyan"),
            ServiceState.FAILED_PERMANENTLY: Style(color="magenta", bold=True),
        }

    async def write_event(self, event: "StatusEvent") -> None:
        """Write a state transition with special formatting.

        Args:
            event: The transition to display.
        """
        style = self._state_styles.get(event.new_state, Style())

        text = Text()
        _ = text.append(f"[{event.service_name}]", style=Style(color="blue", bold=True))
        _ = text.append(" ")
        _ = text.append(event.old_state.value.upper(), style=Style(dim=True))
        _ = text.append(" -> ", style=Style(dim=True))
        _ = text.append(event.new_state.value.upper(), style=style)

        if event.pid is not None:
            _ = text.append(f" (pid={event.pid})", style=Style(dim=True))

        if event.verdict is not None:
            _ = text.append(f" {event.verdict.value}", style=Style(color="red"))

        if event.message:
            _ = text.append(f" - {event.message}", style=style)

        self._console.print(text)


@final
class LoggingEventSink:
    """Event sink that records transitions as structured log entries."""

    __slots__ = ("_logger",)

    def __init__(self, logger: "FilteringBoundLogger | None" = None) -> None:
        self._logger = logger if logger is not None else create_null_logger()

    async def write_event(self, event: "StatusEvent") -> None:
        log = (
            self._logger.warning
            if event.new_state in {ServiceState.DEGRADED, ServiceState.FAILED_PERMANENTLY}
            else self._logger.info
        )
        log(
            "service_state_changed",
            service=event.service_name,
            old_state=event.old_state.value,
            new_state=event.new_state.value,
            verdict=event.verdict.value if event.verdict is not None else None,
            pid=event.pid,
            message=event.message,
            event_timestamp=event.timestamp,
        )
