import threading
import time

import pytest

from tdc import db
from tdc.errors import UnknownEntity
from tdc.registry import HealthRegistry
from tdc.runtime import Status

from conftest import wait_for


def _passive(success_threshold=2, failure_threshold=3):
    return HealthRegistry(
        interval_s=1.0,
        probe_timeout_s=0.2,
        success_threshold=success_threshold,
        failure_threshold=failure_threshold,
    )


def test_new_entity_is_unknown():
    reg = _passive()
    reg.register("edge-1")
    st = reg.query("edge-1")
    assert st.status is Status.UNKNOWN
    assert st.consecutive_successes == 0
    reg.stop()


@pytest.mark.parametrize("success_threshold,failure_threshold", [(1, 1), (2, 3), (3, 2), (4, 4)])
def test_status_flips_only_after_threshold(success_threshold, failure_threshold):
    reg = _passive(success_threshold, failure_threshold)
    reg.register("n")

    for _ in range(success_threshold - 1):
        assert reg.record("n", True).status is Status.UNKNOWN
    assert reg.record("n", True).status is Status.HEALTHY

    for _ in range(failure_threshold - 1):
        assert reg.record("n", False).status is Status.HEALTHY
    assert reg.record("n", False).status is Status.UNHEALTHY

    for _ in range(success_threshold - 1):
        assert reg.record("n", True).status is Status.UNHEALTHY
    assert reg.record("n", True).status is Status.HEALTHY
    reg.stop()


def test_interleaved_results_reset_counters():
    reg = _passive(success_threshold=1, failure_threshold=3)
    reg.register("n")
    reg.record("n", True)
    for _ in range(10):
        reg.record("n", False)
        reg.record("n", False)
        st = reg.record("n", True)
        assert st.status is Status.HEALTHY
        assert st.consecutive_failures == 0
    reg.stop()


def test_register_twice_rejected():
    reg = _passive()
    reg.register("n")
    with pytest.raises(ValueError):
        reg.register("n")
    reg.stop()


def test_remove_discards_state():
    reg = _passive(success_threshold=1)
    reg.register("n")
    reg.record("n", True)
    reg.remove("n")
    with pytest.raises(UnknownEntity):
        reg.query("n")
    assert reg.status_of("n") is Status.UNKNOWN
    with pytest.raises(UnknownEntity):
        reg.record("n", True)
    # Re-registering starts from scratch.
    reg.register("n")
    assert reg.query("n").status is Status.UNKNOWN
    reg.stop()


def test_probe_timeout_counts_as_failure():
    reg = _passive(failure_threshold=2)

    def slow():
        time.sleep(1.0)
        return True

    reg.register("slow", slow, start=False)
    st = reg.probe_once("slow")
    assert st.consecutive_failures == 1
    assert "timeout" in st.last_detail
    assert st.status is Status.UNKNOWN
    reg.stop()


def test_hung_check_does_not_starve_other_entities():
    reg = _passive(success_threshold=1, failure_threshold=3)
    release = threading.Event()
    calls = []

    def hung():
        calls.append(1)
        release.wait(10)
        return True

    reg.register("hung", hung, start=False)
    try:
        for _ in range(6):
            st = reg.probe_once("hung")
        # Only the first tick reached the check; the rest saw it still running.
        assert len(calls) == 1
        assert st.status is Status.UNHEALTHY
        assert st.consecutive_failures == 6
        assert "still running" in st.last_detail

        for n in range(8):
            reg.register(f"ok-{n}", lambda: True, start=False)
            assert reg.probe_once(f"ok-{n}").status is Status.HEALTHY
    finally:
        release.set()
        reg.stop()


def test_hung_check_is_called_again_once_it_returns():
    reg = _passive(success_threshold=1, failure_threshold=3)
    release = threading.Event()
    calls = []

    def sticky():
        calls.append(1)
        release.wait(10)
        return True

    reg.register("n", sticky, start=False)
    try:
        assert reg.probe_once("n").consecutive_failures == 1
        release.set()
        assert wait_for(lambda: reg.probe_once("n").status is Status.HEALTHY, timeout=2.0)
        assert len(calls) >= 2
    finally:
        release.set()
        reg.stop()


def test_probe_exception_counts_as_failure():
    reg = _passive(failure_threshold=1)

    def broken():
        raise ConnectionRefusedError("refused")

    reg.register("broken", broken, start=False)
    st = reg.probe_once("broken")
    assert st.status is Status.UNHEALTHY
    assert "ConnectionRefusedError" in st.last_detail
    reg.stop()


def test_probe_tuple_result_keeps_detail():
    reg = _passive(failure_threshold=1)
    reg.register("n", lambda: (False, "HTTP 503"), start=False)
    assert reg.probe_once("n").last_detail == "HTTP 503"
    reg.stop()


def test_subscribers_see_flips_only():
    reg = _passive(success_threshold=2, failure_threshold=2)
    events = []
    reg.subscribe(events.append)
    reg.register("n")

    reg.record("n", True)
    assert events == []
    reg.record("n", True)
    reg.record("n", True)
    reg.record("n", False)
    reg.record("n", False)
    reg.record("n", False)

    assert [(e.previous, e.current) for e in events] == [
        (Status.UNKNOWN, Status.HEALTHY),
        (Status.HEALTHY, Status.UNHEALTHY),
    ]
    reg.stop()


def test_unsubscribe_and_failing_subscriber():
    reg = _passive(success_threshold=1)
    seen = []

    def boom(_):
        raise RuntimeError("subscriber bug")

    reg.subscribe(boom)
    unsubscribe = reg.subscribe(seen.append)
    reg.register("a")
    reg.record("a", True)
    assert len(seen) == 1

    unsubscribe()
    reg.register("b")
    reg.record("b", True)
    assert len(seen) == 1
    assert any("subscriber failed" in e["message"] for e in db.latest_events(limit=50))
    reg.stop()


def test_flips_are_logged_as_events():
    reg = _passive(success_threshold=1, failure_threshold=1)
    reg.register("edge-1", tier="edge")
    reg.record("edge-1", True)
    reg.record("edge-1", False, "HTTP 500")
    events = db.latest_events(limit=10, tier="edge")
    messages = [e["message"] for e in events]
    assert "Health healthy -> unhealthy (HTTP 500)" in messages
    assert "Health unknown -> healthy" in messages
    assert events[0]["level"] == "WARN"
    assert events[0]["subject"] == "edge-1"
    reg.stop()


def test_background_loop_resolves_status(registry):
    registry.register("n", lambda: True)
    st = registry.wait_until("n", {Status.HEALTHY}, timeout=2.0)
    assert st.status is Status.HEALTHY


def test_background_loop_stops_after_remove(registry):
    calls = []

    def probe():
        calls.append(1)
        return True

    registry.register("n", probe)
    assert wait_for(lambda: len(calls) >= 2)
    registry.remove("n")
    time.sleep(0.05)
    settled = len(calls)
    time.sleep(0.1)
    assert len(calls) <= settled + 1


def test_wait_until_times_out_with_last_state():
    reg = _passive()
    reg.register("n")
    start = time.monotonic()
    st = reg.wait_until("n", {Status.HEALTHY}, timeout=0.1)
    assert st.status is Status.UNKNOWN
    assert time.monotonic() - start >= 0.09
    reg.stop()


def test_wait_until_honours_cancel():
    reg = _passive()
    reg.register("n")
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()
    start = time.monotonic()
    st = reg.wait_until("n", {Status.HEALTHY}, timeout=5.0, cancel=cancel)
    assert st.status is Status.UNKNOWN
    assert time.monotonic() - start < 2.0
    reg.stop()


def test_wait_until_raises_when_removed():
    reg = _passive()
    reg.register("n")
    threading.Timer(0.05, reg.remove, args=("n",)).start()
    with pytest.raises(UnknownEntity):
        reg.wait_until("n", {Status.HEALTHY}, timeout=5.0)
    reg.stop()


def test_invalid_thresholds_rejected():
    with pytest.raises(ValueError):
        HealthRegistry(interval_s=1, probe_timeout_s=1, success_threshold=0, failure_threshold=1)
    with pytest.raises(ValueError):
        HealthRegistry(interval_s=0, probe_timeout_s=1, success_threshold=1, failure_threshold=1)
