import logging

import pytest

from provisio.actions import ActionOutput, ActionRegistry
from provisio.executor import Executor
from provisio.probes import IdempotencyProber, ProbeRegistry
from provisio.schemas import RunContext
from provisio.sequencer import Sequencer


class FakeHost:
    """
    In-memory stand-in for host state.

    A step whose action ran successfully is "installed"; its probe then
    reports satisfied. Failures are queued per step id and raised in order.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.probed: list[str] = []
        self.installed: set[str] = set()
        self.failures: dict[str, list[Exception]] = {}
        self.probe_overrides: dict[str, object] = {}

    def fail(self, step_id: str, *errors: Exception) -> None:
        self.failures.setdefault(step_id, []).extend(errors)

    def probe(self, params, ctx):
        step_id = params["id"]
        self.probed.append(step_id)
        override = self.probe_overrides.get(step_id)
        if isinstance(override, Exception):
            raise override
        if override is not None:
            return override
        return step_id in self.installed

    def act(self, params, ctx, cancel):
        step_id = params["id"]
        self.calls.append(step_id)
        queue = self.failures.get(step_id)
        if queue:
            raise queue.pop(0)
        self.installed.add(step_id)
        return ActionOutput(stdout=f"{step_id} done\n")


@pytest.fixture(autouse=True)
def reset_provisio_logger():
    """setup_logging() detaches the provisio logger; restore it between tests."""
    yield
    logger = logging.getLogger("provisio")
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def probe_registry(host):
    registry = ProbeRegistry.create_default(timeout_s=5)
    registry.register("fake", host.probe)
    return registry


@pytest.fixture
def action_registry(host):
    registry = ActionRegistry.create_default()
    registry.register("fake", host.act)
    return registry


@pytest.fixture
def sleeps():
    """Recorded backoff delays (executor sleep is replaced)."""
    return []


@pytest.fixture
def executor(action_registry, sleeps):
    return Executor(
        actions=action_registry,
        default_timeout_s=10,
        grace_period_s=0.5,
        max_backoff_s=60,
        sleep=sleeps.append,
    )


@pytest.fixture
def sequencer(probe_registry, executor):
    return Sequencer(IdempotencyProber(probe_registry), executor)


@pytest.fixture
def ctx(tmp_path):
    return RunContext.create(
        variables={"workspace": "ws"},
        env={"HOME": str(tmp_path), "PATH": "/usr/bin:/bin"},
        work_dir=tmp_path,
    )


@pytest.fixture
def fake_step():
    """Build a manifest step entry backed by the fake host."""

    def _make(name, depends_on=(), criticality="required", **extra):
        step = {
            "name": name,
            "depends_on": list(depends_on),
            "criticality": criticality,
            "retry_backoff_s": 1,
            "probe": {"kind": "fake", "id": name},
            "action": {"kind": "fake", "id": name},
        }
        step.update(extra)
        return step

    return _make
