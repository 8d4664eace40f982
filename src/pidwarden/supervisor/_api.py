"""FastAPI control endpoints for the supervisor.

This module provides REST API endpoints for controlling and monitoring
the supervisor and its managed services.
"""

# pyright: reportUnusedFunction=false
# FastAPI route handlers are registered via decorators, not direct calls

from typing import TYPE_CHECKING, Annotated, Never

import pendulum
from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from pidwarden.exceptions import ServiceNotFoundError

if TYPE_CHECKING:
    from ._models import ControlResult, ServiceStatusReport
    from ._supervisor import Supervisor


class ServiceStatusResponse(BaseModel):
    """Response model for service status."""

    name: str
    state: str
    pid: int | None
    uptime: float | None
    restart_count: int
    consecutive_failures: int
    last_verdict: str
    restart_history: list[str]
    stale: bool
    confidence: str


class SupervisorStatusResponse(BaseModel):
    """Response model for overall supervisor status."""

    services: dict[str, ServiceStatusResponse]
    total_services: int
    active_services: list[str]


class ControlResponse(BaseModel):
    """Response model for control commands."""

    ok: bool
    service: str
    state: str
    message: str


class LogsResponse(BaseModel):
    """Response model for captured service output."""

    service: str
    since: str
    lines: list[str]


class MessageResponse(BaseModel):
    """Response model for simple message responses."""

    message: str


def _build_service_status(report: "ServiceStatusReport") -> ServiceStatusResponse:
    return ServiceStatusResponse(
        name=report.name,
        state=report.state,
        pid=report.pid,
        uptime=report.uptime,
        restart_count=report.restart_count,
        consecutive_failures=report.consecutive_failures,
        last_verdict=report.last_verdict,
        restart_history=list(report.restart_history),
        stale=report.stale,
        confidence=report.confidence,
    )


def _build_control(result: "ControlResult") -> ControlResponse:
    return ControlResponse(
        ok=result.ok,
        service=result.service_name,
        state=result.state,
        message=result.message,
    )


def _raise_not_found(name: str, cause: ServiceNotFoundError) -> Never:
    """Raise HTTP 404 for service not found.

    Args:
        name: The service name.
        cause: The original exception.

    Raises:
        HTTPException: Always raises with 404 status.
    """
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Service '{name}' not found",
    ) from cause


def _raise_bad_request(detail: str) -> Never:
    """Raise HTTP 400 for an unusable request parameter.

    Raises:
        HTTPException: Always raises with 400 status.
    """
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _parse_since(value: str) -> pendulum.DateTime:
    try:
        parsed = pendulum.parse(value, tz="UTC")
    except ValueError:
        _raise_bad_request(f"Invalid timestamp: {value!r}")
    if not isinstance(parsed, pendulum.DateTime):
        _raise_bad_request(f"Timestamp must include a date and time: {value!r}")
    return parsed


def create_control_router(supervisor: "Supervisor") -> APIRouter:  # noqa: PLR0915
    """Create a FastAPI router for supervisor control endpoints.

    Args:
        supervisor: The Supervisor instance to control.

    Returns:
        A FastAPI APIRouter with control endpoints.
    """
    router = APIRouter(prefix="/supervisor", tags=["supervisor"])

    @router.get("/status", response_model=SupervisorStatusResponse)
    async def get_supervisor_status() -> SupervisorStatusResponse:
        """Get overall supervisor status."""
        reports = await supervisor.status_all()
        return SupervisorStatusResponse(
            services={report.name: _build_service_status(report) for report in reports},
            total_services=len(reports),
            active_services=supervisor.list_active(),
        )

    @router.get("/services", response_model=list[ServiceStatusResponse])
    async def list_services() -> list[ServiceStatusResponse]:
        """List all managed services."""
        return [_build_service_status(report) for report in await supervisor.status_all()]

    @router.get("/services/{name}", response_model=ServiceStatusResponse)
    async def get_service_status(name: str) -> ServiceStatusResponse:
        """Get status of a specific service."""
        try:
            _ = supervisor.get_service(name)
        except ServiceNotFoundError as e:
            _raise_not_found(name, e)
        return _build_service_status(await supervisor.status(name))

    @router.get("/services/{name}/logs", response_model=LogsResponse)
    async def get_service_logs(
        name: str,
        since: Annotated[str, Query(description="ISO 8601 lower bound")],
    ) -> LogsResponse:
        """Get output lines a service wrote at or after `since`."""
        since_dt = _parse_since(since)
        try:
            lines = supervisor.logs_since(name, since_dt)
        except ServiceNotFoundError as e:
            _raise_not_found(name, e)
        return LogsResponse(service=name, since=since_dt.to_iso8601_string(), lines=lines)

    @router.post("/services/{name}/start", response_model=ControlResponse)
    async def start_service(name: str) -> ControlResponse:
        """Start a specific service."""
        try:
            result = await supervisor.start(name)
        except ServiceNotFoundError as e:
            _raise_not_found(name, e)
        return _build_control(result)

    @router.post("/services/{name}/stop", response_model=ControlResponse)
    async def stop_service(
        name: str,
        force: Annotated[bool, Query()] = False,  # noqa: FBT002
    ) -> ControlResponse:
        """Stop a specific service."""
        try:
            result = await supervisor.stop(name, force=force)
        except ServiceNotFoundError as e:
            _raise_not_found(name, e)
        return _build_control(result)

    @router.post("/services/{name}/restart", response_model=ControlResponse)
    async def restart_service(name: str) -> ControlResponse:
        """Restart a specific service."""
        try:
            result = await supervisor.restart(name)
        except ServiceNotFoundError as e:
            _raise_not_found(name, e)
        return _build_control(result)

    @router.post("/services/{name}/reset", response_model=ControlResponse)
    async def reset_service(name: str) -> ControlResponse:
        """Clear a permanent failure of a specific service."""
        try:
            result = await supervisor.reset_failure(name)
        except ServiceNotFoundError as e:
            _raise_not_found(name, e)
        return _build_control(result)

    @router.post("/shutdown", response_model=MessageResponse)
    async def shutdown_supervisor() -> MessageResponse:
        """Trigger graceful shutdown of the supervisor."""
        await supervisor.shutdown()
        return MessageResponse(message="Shutdown initiated")

    return router
