import pytest

from pidwarden.supervisor import (
    HealthReport,
    HealthVerdict,
    Liveness,
    PIDKind,
    PIDStore,
    RestartController,
    ServiceState,
    SignalKind,
    StatusEvent,
)
from tests.unit.supervisor._fakes import (
    ControllerFactory,
    FakeClock,
    FakeLauncher,
    FakeProber,
    ManagerFactory,
    RecordFactory,
    RecordingSink,
    StaticMonitor,
)

pytestmark = pytest.mark.anyio


def _crash(pid: int | None) -> HealthReport:
    return HealthReport(verdict=HealthVerdict.CRASHED, liveness=Liveness.DEAD, pid=pid)


def _healthy(pid: int, liveness: Liveness = Liveness.RUNNING) -> HealthReport:
    return HealthReport(verdict=HealthVerdict.HEALTHY, liveness=liveness, pid=pid)


def _primary_pid(store: PIDStore, name: str = "worker") -> int | None:
    entry = store.read(name, PIDKind.PRIMARY)
    return entry.pid if entry is not None else None


async def _crash_and_relaunch(
    controller: RestartController, prober: FakeProber, store: PIDStore, clock: FakeClock
) -> None:
    pid = _primary_pid(store)
    assert pid is not None
    prober.kill(pid)
    await controller.apply(_crash(pid))
    clock.advance(3600.0)
    await controller.advance()


class TestStart:
    async def test_start_launches_and_records(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        store: PIDStore,
        sink: RecordingSink,
    ) -> None:
        controller = make_controller()

        result = await controller.request_start()

        assert result.ok
        assert result.state == "running"
        assert controller.state == ServiceState.RUNNING
        assert controller.runtime.started_at is not None
        assert len(launcher.launches) == 1
        primary = store.read("worker", PIDKind.PRIMARY)
        session = store.read("worker", PIDKind.SESSION)
        assert primary is not None
        assert session is not None
        assert primary.fingerprint == f"fp-{primary.pid}"
        assert primary.handle == f"fake:{primary.pid}"
        assert sink.transitions() == [("stopped", "starting"), ("starting", "running")]

    async def test_start_while_running_is_a_no_op(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        controller = make_controller()
        _ = await controller.request_start()

        result = await controller.request_start()

        assert result.ok
        assert result.message == "Already running"
        assert len(launcher.launches) == 1

    async def test_start_while_failed_is_refused(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.failures = 10
        controller = make_controller(max_restarts=0)
        _ = await controller.request_start()
        assert controller.state == ServiceState.FAILED_PERMANENTLY

        result = await controller.request_start()

        assert not result.ok
        assert len(launcher.launches) == 1

    async def test_process_dying_during_startup_schedules_restart(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        store: PIDStore,
    ) -> None:
        launcher.launch_liveness = Liveness.DEAD
        controller = make_controller(startup_grace=0.05)

        result = await controller.request_start()

        assert not result.ok
        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.consecutive_failures == 1
        assert store.list_services() == set()

    async def test_ambiguous_startup_probe_counts_as_started(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.launch_liveness = Liveness.AMBIGUOUS
        controller = make_controller()

        result = await controller.request_start()

        assert result.ok
        assert controller.runtime.ambiguous


class TestStop:
    async def test_stop_sends_graceful_signal(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        store: PIDStore,
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller()
        _ = await controller.request_start()

        result = await controller.request_stop()

        assert result.ok
        assert result.message == "Stopped"
        assert controller.state == ServiceState.STOPPED
        assert launcher.signals == [("fake:1001", 1001, SignalKind.GRACEFUL)]
        assert store.list_services() == set()
        assert controller.runtime.started_at is None

    async def test_stop_is_idempotent(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        sink: RecordingSink,
    ) -> None:
        controller = make_controller()
        _ = await controller.request_start()
        _ = await controller.request_stop()
        events_after_first_stop = len(sink.events)
        signals_after_first_stop = len(launcher.signals)

        result = await controller.request_stop()

        assert result.ok
        assert result.message == "Already stopped"
        assert controller.state == ServiceState.STOPPED
        assert len(sink.events) == events_after_first_stop
        assert len(launcher.signals) == signals_after_first_stop

    async def test_stop_escalates_when_grace_expires(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.pids = [1001]
        launcher.ignore_graceful = True
        controller = make_controller(shutdown_grace=0.05)
        _ = await controller.request_start()

        _ = await controller.request_stop()

        assert launcher.signals == [
            ("fake:1001", 1001, SignalKind.GRACEFUL),
            ("fake:1001", 1001, SignalKind.FORCE),
        ]
        assert controller.state == ServiceState.STOPPED

    async def test_force_stop_skips_graceful_signal(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller()
        _ = await controller.request_start()

        _ = await controller.request_stop(force=True)

        assert launcher.signals == [("fake:1001", 1001, SignalKind.FORCE)]

    async def test_stop_resets_failure_count(
        self,
        make_controller: ControllerFactory,
        prober: FakeProber,
        store: PIDStore,
    ) -> None:
        controller = make_controller()
        _ = await controller.request_start()
        pid = _primary_pid(store)
        assert pid is not None
        prober.kill(pid)
        await controller.apply(_crash(pid))
        assert controller.runtime.consecutive_failures == 1

        _ = await controller.request_stop()

        assert controller.runtime.consecutive_failures == 0

    async def test_stop_preempts_pending_backoff(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        controller = make_controller()
        _ = await controller.request_start()
        pid = _primary_pid(store)
        assert pid is not None
        prober.kill(pid)
        await controller.apply(_crash(pid))
        assert controller.state == ServiceState.RESTARTING

        _ = await controller.request_stop()
        clock.advance(3600.0)
        await controller.advance()

        assert controller.state == ServiceState.STOPPED
        assert controller.runtime.restart_at is None
        assert controller.seconds_until_restart() is None
        assert len(launcher.launches) == 1

    async def test_stop_of_failed_service_keeps_failure(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.failures = 10
        controller = make_controller(max_restarts=0)
        _ = await controller.request_start()

        result = await controller.request_stop()

        assert result.ok
        assert controller.state == ServiceState.FAILED_PERMANENTLY


class TestRestartPolicy:
    async def test_crash_schedules_restart_with_backoff(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
        sink: RecordingSink,
        clock: FakeClock,
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller()
        _ = await controller.request_start()
        prober.kill(1001)

        await controller.apply(_crash(1001))

        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.consecutive_failures == 1
        assert len(controller.runtime.restart_history) == 1
        assert controller.runtime.restart_at == clock.now + 1.0
        assert sink.transitions()[-2:] == [("running", "degraded"), ("degraded", "restarting")]
        assert sink.events[-2].verdict == HealthVerdict.CRASHED

    async def test_advance_waits_for_backoff(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        launcher.pids = [1001, 1050]
        controller = make_controller()
        _ = await controller.request_start()
        prober.kill(1001)
        await controller.apply(_crash(1001))

        clock.advance(0.5)
        await controller.advance()
        assert controller.state == ServiceState.RESTARTING
        assert controller.seconds_until_restart() == pytest.approx(0.5)

        clock.advance(0.5)
        await controller.advance()
        assert controller.state == ServiceState.RUNNING
        assert _primary_pid(store) == 1050

    async def test_crash_terminates_leftover_session(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller()
        _ = await controller.request_start()
        prober.kill(1001)

        await controller.apply(_crash(1001))

        assert launcher.signals == [("fake:1001", 1001, SignalKind.GRACEFUL)]

    async def test_reused_session_pid_is_never_signalled(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller()
        _ = await controller.request_start()
        prober.kill(1001)
        prober.reused.add(1001)

        await controller.apply(_crash(1001))

        assert launcher.signals == []
        assert controller.state == ServiceState.RESTARTING

    async def test_budget_exhaustion_fails_permanently(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
        sink: RecordingSink,
    ) -> None:
        controller = make_controller(max_restarts=2)
        _ = await controller.request_start()
        await _crash_and_relaunch(controller, prober, store, clock)
        await _crash_and_relaunch(controller, prober, store, clock)
        assert controller.runtime.consecutive_failures == 2
        launches_before = len(launcher.launches)

        pid = _primary_pid(store)
        assert pid is not None
        prober.kill(pid)
        await controller.apply(_crash(pid))

        assert controller.state == ServiceState.FAILED_PERMANENTLY
        assert store.list_services() == set()
        assert sink.events[-1].new_state == ServiceState.FAILED_PERMANENTLY
        assert sink.events[-1].verdict == HealthVerdict.CRASHED

        clock.advance(3600.0)
        await controller.advance()
        assert len(launcher.launches) == launches_before

    async def test_healthy_tick_resets_budget(
        self,
        make_controller: ControllerFactory,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        controller = make_controller(max_restarts=3)
        _ = await controller.request_start()
        await _crash_and_relaunch(controller, prober, store, clock)
        await _crash_and_relaunch(controller, prober, store, clock)
        assert controller.runtime.consecutive_failures == 2

        pid = _primary_pid(store)
        assert pid is not None
        await controller.apply(_healthy(pid))
        assert controller.runtime.consecutive_failures == 0

        prober.kill(pid)
        await controller.apply(_crash(pid))
        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.consecutive_failures == 1

    async def test_ambiguous_healthy_tick_keeps_budget(
        self,
        make_controller: ControllerFactory,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        controller = make_controller()
        _ = await controller.request_start()
        await _crash_and_relaunch(controller, prober, store, clock)
        pid = _primary_pid(store)
        assert pid is not None

        await controller.apply(_healthy(pid, Liveness.AMBIGUOUS))

        assert controller.runtime.consecutive_failures == 1
        assert controller.runtime.ambiguous

    async def test_report_without_verdict_changes_nothing(
        self, make_controller: ControllerFactory, sink: RecordingSink, store: PIDStore
    ) -> None:
        controller = make_controller()
        _ = await controller.request_start()
        events = len(sink.events)
        pid = _primary_pid(store)
        assert pid is not None

        await controller.apply(HealthReport(verdict=None, liveness=Liveness.RUNNING, pid=pid))

        assert controller.state == ServiceState.RUNNING
        assert len(sink.events) == events

    async def test_reports_are_ignored_outside_running(
        self, make_controller: ControllerFactory, sink: RecordingSink
    ) -> None:
        controller = make_controller()

        await controller.apply(_crash(None))

        assert controller.state == ServiceState.STOPPED
        assert sink.events == []

    async def test_stall_restarts_a_live_process(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        sink: RecordingSink,
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller(progress_timeout=300.0)
        _ = await controller.request_start()

        await controller.apply(
            HealthReport(verdict=HealthVerdict.STALLED, liveness=Liveness.RUNNING, pid=1001)
        )

        assert controller.state == ServiceState.RESTARTING
        assert ("fake:1001", 1001, SignalKind.GRACEFUL) in launcher.signals
        degraded = [e for e in sink.events if e.new_state == ServiceState.DEGRADED]
        assert len(degraded) == 1
        assert degraded[0].verdict == HealthVerdict.STALLED
        assert controller.runtime.last_verdict == HealthVerdict.STALLED

    async def test_resource_breach_restarts(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller()
        _ = await controller.request_start()

        await controller.apply(
            HealthReport(
                verdict=HealthVerdict.RESOURCE_EXCEEDED,
                liveness=Liveness.RUNNING,
                pid=1001,
                resource_breaches=3,
            )
        )

        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.resource_breaches == 0
        assert controller.runtime.last_verdict == HealthVerdict.RESOURCE_EXCEEDED


class TestLaunchFailures:
    async def test_launch_error_consumes_budget(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        clock: FakeClock,
    ) -> None:
        launcher.failures = 1
        controller = make_controller()

        result = await controller.request_start()

        assert not result.ok
        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.consecutive_failures == 1

        clock.advance(1.0)
        await controller.advance()
        assert controller.state == ServiceState.RUNNING

    async def test_repeated_launch_errors_fail_permanently(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        clock: FakeClock,
    ) -> None:
        launcher.failures = 5
        controller = make_controller(max_restarts=1)

        _ = await controller.request_start()
        clock.advance(1.0)
        await controller.advance()

        assert controller.state == ServiceState.FAILED_PERMANENTLY
        assert len(launcher.launches) == 2

    async def test_unexpected_launcher_error_consumes_budget(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        launcher.launch_exception = RuntimeError("launcher bug")
        controller = make_controller()

        result = await controller.request_start()

        assert not result.ok
        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.consecutive_failures == 1
        assert store.list_services() == set()

        launcher.launch_exception = None
        clock.advance(1.0)
        await controller.advance()
        assert controller.state == ServiceState.RUNNING

    async def test_unexpected_launcher_error_can_exhaust_budget(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.launch_exception = ValueError("embedded null byte")
        controller = make_controller(max_restarts=0)

        _ = await controller.request_start()

        assert controller.state == ServiceState.FAILED_PERMANENTLY

    async def test_failing_signals_still_schedule_restart(
        self,
        make_controller: ControllerFactory,
        launcher: FakeLauncher,
        store: PIDStore,
    ) -> None:
        launcher.pids = [1001]
        controller = make_controller(shutdown_grace=0.02)
        _ = await controller.request_start()
        launcher.terminate_exception = PermissionError("not allowed")

        await controller.apply(
            HealthReport(verdict=HealthVerdict.STALLED, liveness=Liveness.RUNNING, pid=1001)
        )

        assert controller.state == ServiceState.RESTARTING
        assert ("fake:1001", 1001, SignalKind.FORCE) in launcher.signals
        assert store.list_services() == set()


class TestResetFailure:
    async def test_reset_returns_to_stopped(
        self, make_controller: ControllerFactory, launcher: FakeLauncher
    ) -> None:
        launcher.failures = 1
        controller = make_controller(max_restarts=0)
        _ = await controller.request_start()
        assert controller.state == ServiceState.FAILED_PERMANENTLY

        result = await controller.reset_failure()

        assert result.ok
        assert controller.state == ServiceState.STOPPED
        assert controller.runtime.consecutive_failures == 0

        result = await controller.request_start()
        assert result.ok
        assert controller.state == ServiceState.RUNNING

    async def test_reset_of_healthy_service_is_a_no_op(
        self, make_controller: ControllerFactory, sink: RecordingSink
    ) -> None:
        controller = make_controller()

        result = await controller.reset_failure()

        assert result.ok
        assert result.message == "Service is not failed"
        assert sink.events == []


class TestRecover:
    async def test_live_process_is_adopted(
        self,
        make_controller: ControllerFactory,
        store: PIDStore,
        prober: FakeProber,
        launcher: FakeLauncher,
    ) -> None:
        _ = store.write("worker", PIDKind.PRIMARY, 777, "fp-777", handle="fake:777")
        prober.states[777] = Liveness.RUNNING
        controller = make_controller()

        await controller.recover()

        assert controller.state == ServiceState.RUNNING
        assert controller.runtime.started_at is not None
        assert launcher.launches == []

    async def test_dead_process_goes_through_crash_path(
        self,
        make_controller: ControllerFactory,
        store: PIDStore,
    ) -> None:
        _ = store.write("worker", PIDKind.PRIMARY, 777, "fp-777", handle="fake:777")
        _ = store.write("worker", PIDKind.SESSION, 777, "fp-777", handle="fake:777")
        controller = make_controller()

        await controller.recover()

        assert controller.state == ServiceState.RESTARTING
        assert controller.runtime.consecutive_failures == 1
        assert store.list_services() == set()

    async def test_orphan_session_record_is_cleared(
        self, make_controller: ControllerFactory, store: PIDStore, sink: RecordingSink
    ) -> None:
        _ = store.write("worker", PIDKind.SESSION, 777, "fp-777", handle="fake:777")
        controller = make_controller()

        await controller.recover()

        assert controller.state == ServiceState.STOPPED
        assert store.list_services() == set()
        assert sink.events == []


class TestEventSinks:
    async def test_failing_sink_does_not_block_transitions(
        self,
        store: PIDStore,
        launcher: FakeLauncher,
        prober: FakeProber,
        clock: FakeClock,
        make_record: RecordFactory,
    ) -> None:
        class BrokenSink:
            async def write_event(self, event: StatusEvent) -> None:
                msg = f"sink down at {event.new_state}"
                raise RuntimeError(msg)

        recording = RecordingSink()
        controller = RestartController(
            make_record(),
            store=store,
            launcher=launcher,
            prober=prober,  # pyright: ignore[reportArgumentType]
            sinks=[BrokenSink(), recording],
            clock=clock,
            poll_step=0.001,
        )

        result = await controller.request_start()

        assert result.ok
        assert recording.transitions() == [("stopped", "starting"), ("starting", "running")]


class TestScenarios:
    async def test_crashed_pipeline_is_restarted_on_next_poll(
        self,
        make_manager: ManagerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        launcher.pids = [1001, 1050]
        manager = make_manager(
            name="etl-stage1",
            max_restarts=2,
            progress_timeout=300.0,
            progress_monitor=StaticMonitor(0),
        )
        _ = await manager.start()
        assert _primary_pid(store, "etl-stage1") == 1001

        prober.kill(1001)
        report = await manager.poll()
        assert report is not None
        assert report.verdict == HealthVerdict.CRASHED
        assert manager.state == ServiceState.RESTARTING

        clock.advance(1.0)
        _ = await manager.poll()

        runtime = manager.controller.runtime
        assert manager.state == ServiceState.RUNNING
        assert _primary_pid(store, "etl-stage1") == 1050
        assert len(runtime.restart_history) == 1
        assert runtime.consecutive_failures == 1

    async def test_third_crash_fails_permanently_until_reset(
        self,
        make_manager: ManagerFactory,
        launcher: FakeLauncher,
        prober: FakeProber,
        store: PIDStore,
        clock: FakeClock,
    ) -> None:
        manager = make_manager(name="etl-stage1", max_restarts=2)
        _ = await manager.start()

        for _attempt in range(2):
            pid = _primary_pid(store, "etl-stage1")
            assert pid is not None
            prober.kill(pid)
            _ = await manager.poll()
            clock.advance(3600.0)
            _ = await manager.poll()
            assert manager.state == ServiceState.RUNNING

        pid = _primary_pid(store, "etl-stage1")
        assert pid is not None
        prober.kill(pid)
        _ = await manager.poll()

        assert manager.state == ServiceState.FAILED_PERMANENTLY
        assert store.list_services() == set()
        launches = len(launcher.launches)

        clock.advance(3600.0)
        _ = await manager.poll()
        assert len(launcher.launches) == launches

        _ = await manager.reset_failure()
        result = await manager.start()
        assert result.ok
        assert len(launcher.launches) == launches + 1
