import sys
import threading
import time

import pytest

# Ensure project root is importable (so `import cli` and `import tdc` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from tdc import db  # noqa: E402
from tdc.registry import HealthRegistry  # noqa: E402
from tdc.rollouts import DeploymentController  # noqa: E402
from tdc.router import TrafficRouter  # noqa: E402
from tdc.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite event log."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "tdc.db")))
    db.init_db()


class ManualClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDriver:
    """In-memory InstanceDriver.

    ``healthy(slot)`` decides every probe result; ``start_delay`` and
    ``drain_s`` simulate slow boots and slow in-flight work.
    """

    def __init__(self, healthy=None, start_delay=0.0, drain_s=0.0, on_start=None):
        self.healthy = healthy or (lambda slot: True)
        self.start_delay = start_delay
        self.drain_s = drain_s
        self.on_start = on_start
        self.prepare_failures = 0
        self.prepared = []
        self.started = []
        self.drained = []
        self.terminated = []
        self.env = {}
        self._lock = threading.Lock()

    def prepare(self, revision):
        with self._lock:
            self.prepared.append(revision.artifact)
            if self.prepare_failures > 0:
                self.prepare_failures -= 1
                raise ConnectionError("artifact registry unavailable")

    def start(self, slot, env):
        if self.start_delay:
            time.sleep(self.start_delay)
        with self._lock:
            self.started.append(slot.id)
            self.env[slot.id] = dict(env)
        if self.on_start:
            self.on_start(slot)
        return f"handle-{slot.id}"

    def probe(self, slot):
        return lambda: self.healthy(slot)

    def drain(self, slot, timeout_s):
        if self.drain_s > timeout_s:
            time.sleep(timeout_s)
            finished = False
        else:
            time.sleep(self.drain_s)
            finished = True
        with self._lock:
            self.drained.append(slot.id)
        return finished

    def terminate(self, slot):
        with self._lock:
            self.terminated.append(slot.id)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def registry():
    reg = HealthRegistry(interval_s=0.01, probe_timeout_s=0.5, success_threshold=1, failure_threshold=3)
    yield reg
    reg.stop()


def make_tier(registry, driver, tier="edge", startup_timeout_s=2.0, startup_retries=0, drain_timeout_s=0.5, capacity_wait_s=2.0, config_provider=None):
    router = TrafficRouter(tier, registry)
    controller = DeploymentController(
        tier,
        driver,
        registry,
        router,
        startup_timeout_s=startup_timeout_s,
        startup_retries=startup_retries,
        drain_timeout_s=drain_timeout_s,
        capacity_wait_s=capacity_wait_s,
        config_provider=config_provider,
    )
    return router, controller
