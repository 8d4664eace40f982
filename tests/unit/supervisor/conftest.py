from pathlib import Path

import pytest

from pidwarden.supervisor import (
    ExponentialBackoff,
    HealthEvaluator,
    LaunchCommand,
    PIDStore,
    RestartController,
    ServiceManager,
    ServiceRecord,
)
from tests.unit.supervisor._fakes import (
    ControllerFactory,
    FakeClock,
    FakeLauncher,
    FakeProber,
    FakeSampler,
    ManagerFactory,
    RecordFactory,
    RecordingSink,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def launcher(prober: FakeProber) -> FakeLauncher:
    return FakeLauncher(prober)


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def store(state_dir: Path) -> PIDStore:
    return PIDStore(state_dir)


@pytest.fixture
def make_record() -> RecordFactory:
    """Return a factory for service records with fast timings."""

    def _make(name: str = "worker", **overrides: object) -> ServiceRecord:
        defaults: dict[str, object] = {
            "name": name,
            "command": LaunchCommand(argv=("worker", "--serve")),
            "poll_interval": 1.0,
            "max_restarts": 3,
            "backoff": ExponentialBackoff(base=1.0, max_delay=60.0),
            "startup_grace": 0.5,
            "shutdown_grace": 0.5,
            "launch_timeout": 1.0,
            "probe_timeout": 0.5,
        }
        defaults.update(overrides)
        return ServiceRecord(**defaults)  # pyright: ignore[reportArgumentType]

    return _make


@pytest.fixture
def make_controller(
    store: PIDStore,
    launcher: FakeLauncher,
    prober: FakeProber,
    sink: RecordingSink,
    clock: FakeClock,
    make_record: RecordFactory,
) -> ControllerFactory:
    def _make(record: ServiceRecord | None = None, **overrides: object) -> RestartController:
        return RestartController(
            record if record is not None else make_record(**overrides),
            store=store,
            launcher=launcher,
            prober=prober,  # pyright: ignore[reportArgumentType]
            sinks=[sink],
            clock=clock,
            poll_step=0.001,
        )

    return _make


@pytest.fixture
def evaluator(
    store: PIDStore, prober: FakeProber, sampler: FakeSampler, clock: FakeClock
) -> HealthEvaluator:
    return HealthEvaluator(store, prober=prober, sampler=sampler, clock=clock)  # pyright: ignore[reportArgumentType]


@pytest.fixture
def make_manager(
    make_controller: ControllerFactory,
    evaluator: HealthEvaluator,
    store: PIDStore,
) -> ManagerFactory:
    def _make(record: ServiceRecord | None = None, **overrides: object) -> ServiceManager:
        return ServiceManager(
            make_controller(record, **overrides),
            evaluator=evaluator,
            store=store,
        )

    return _make
