from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from threading import Condition, Event, Lock, Thread
from typing import Callable, Iterable, Union

from . import db
from .errors import TransientProbeFailure, UnknownEntity
from .logger import get_logger
from .runtime import HealthEvent, HealthState, Status

ProbeResult = Union[bool, tuple[bool, str]]
Probe = Callable[[], ProbeResult]
Subscriber = Callable[[HealthEvent], None]


class HealthRegistry:
    """Liveness/readiness of every instance slot and datastore node.

    Each registered entity with a probe gets its own daemon thread that probes
    every ``interval_s``. Probe calls run on a single-worker executor owned by
    the entity, so a hung probe is cut off at ``probe_timeout_s``, counted as
    a failure, and holds up nobody else. While it is still running, further
    ticks for that entity count as failures without calling the probe again.
    Status flips only after ``success_threshold`` / ``failure_threshold``
    consecutive like results. Subscribers are told about flips, never about
    individual probes.
    """

    def __init__(
        self,
        interval_s: float,
        probe_timeout_s: float,
        success_threshold: int,
        failure_threshold: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_s <= 0 or probe_timeout_s <= 0:
            raise ValueError("interval_s and probe_timeout_s must be > 0")
        if success_threshold < 1 or failure_threshold < 1:
            raise ValueError("thresholds must be >= 1")
        self.interval_s = float(interval_s)
        self.probe_timeout_s = float(probe_timeout_s)
        self.success_threshold = int(success_threshold)
        self.failure_threshold = int(failure_threshold)
        self._clock = clock
        self._lock = Lock()
        self._cond = Condition(self._lock)
        self._states: dict[str, HealthState] = {}
        self._tiers: dict[str, str | None] = {}
        self._probes: dict[str, Probe] = {}
        self._stops: dict[str, Event] = {}
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._inflight: dict[str, Future] = {}
        self._subscribers: list[Subscriber] = []
        self._closed = False
        self._log = get_logger("registry")

    # -- membership -------------------------------------------------------

    def register(self, entity_id: str, probe: Probe | None = None, tier: str | None = None, start: bool = True) -> None:
        """Start tracking an entity. Its status is ``unknown`` until probes resolve it."""
        with self._lock:
            if entity_id in self._states:
                raise ValueError(f"Entity '{entity_id}' is already registered")
            self._states[entity_id] = HealthState(entity_id=entity_id)
            self._tiers[entity_id] = tier
            if probe is not None:
                self._probes[entity_id] = probe
                self._executors[entity_id] = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"probe-{entity_id}")
        if probe is not None and start:
            self._start_loop(entity_id)

    def remove(self, entity_id: str) -> None:
        """Stop probing and discard state. Unknown ids are ignored."""
        with self._lock:
            self._states.pop(entity_id, None)
            self._tiers.pop(entity_id, None)
            self._probes.pop(entity_id, None)
            stop = self._stops.pop(entity_id, None)
            executor = self._executors.pop(entity_id, None)
            self._inflight.pop(entity_id, None)
            self._cond.notify_all()
        if stop is not None:
            stop.set()
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def entities(self) -> list[str]:
        with self._lock:
            return sorted(self._states)

    def _start_loop(self, entity_id: str) -> None:
        stop = Event()
        with self._lock:
            if entity_id not in self._states or entity_id in self._stops:
                return
            self._stops[entity_id] = stop
        Thread(target=self._loop, args=(entity_id, stop), name=f"probe-{entity_id}", daemon=True).start()

    def _loop(self, entity_id: str, stop: Event) -> None:
        while not stop.is_set():
            try:
                self.probe_once(entity_id)
            except UnknownEntity:
                return
            stop.wait(self.interval_s)

    def stop(self) -> None:
        with self._lock:
            self._closed = True
            stops = list(self._stops.values())
            self._stops.clear()
            executors = list(self._executors.values())
            self._executors.clear()
            self._inflight.clear()
        for s in stops:
            s.set()
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)

    # -- observations -----------------------------------------------------

    def probe_once(self, entity_id: str) -> HealthState:
        with self._lock:
            probe = self._probes.get(entity_id)
            executor = self._executors.get(entity_id)
            pending = self._inflight.get(entity_id)
            closed = self._closed
        if probe is None or executor is None:
            raise UnknownEntity(f"No probe registered for '{entity_id}'")
        if closed:
            return self.query(entity_id)

        if pending is not None and not pending.done():
            result = (False, f"previous check still running after {self.probe_timeout_s}s")
        else:
            try:
                future = executor.submit(probe)
            except RuntimeError:
                # Executor shut down by a concurrent remove() or stop().
                return self.query(entity_id)
            with self._lock:
                if self._executors.get(entity_id) is executor:
                    self._inflight[entity_id] = future
            try:
                result = future.result(timeout=self.probe_timeout_s)
            except FutureTimeout:
                result = (False, f"timeout after {self.probe_timeout_s}s")
            except Exception as e:
                # A probe that cannot reach its target is an ordinary failure.
                result = (False, f"{type(e).__name__}: {e}")

        if isinstance(result, tuple):
            ok, detail = bool(result[0]), str(result[1])
        else:
            ok, detail = bool(result), ""
        if not ok:
            self._log.debug("%s", TransientProbeFailure(entity_id, detail or "probe returned failure"))
        return self.record(entity_id, ok, detail)

    def record(self, entity_id: str, ok: bool, detail: str = "") -> HealthState:
        """Apply one probe outcome with hysteresis and publish a flip if one happened."""
        event: HealthEvent | None = None
        with self._lock:
            st = self._states.get(entity_id)
            if st is None:
                raise UnknownEntity(f"Unknown entity '{entity_id}'")
            now = self._clock()
            st.last_probe_at = now
            st.last_detail = detail
            previous = st.status
            if ok:
                st.consecutive_successes += 1
                st.consecutive_failures = 0
                if st.consecutive_successes >= self.success_threshold and st.status is not Status.HEALTHY:
                    st.status = Status.HEALTHY
            else:
                st.consecutive_failures += 1
                st.consecutive_successes = 0
                if st.consecutive_failures >= self.failure_threshold and st.status is not Status.UNHEALTHY:
                    st.status = Status.UNHEALTHY
            if st.status is not previous:
                event = HealthEvent(entity_id=entity_id, previous=previous, current=st.status, at=now)
            self._cond.notify_all()
            snapshot = st.copy()
            tier = self._tiers.get(entity_id)

        if event is not None:
            level = "WARN" if event.current is Status.UNHEALTHY else "INFO"
            suffix = f" ({detail})" if detail else ""
            db.log_event(level, f"Health {event.previous.value} -> {event.current.value}{suffix}", tier=tier, subject=entity_id)
            self._publish(event)
        return snapshot

    # -- reads --------------------------------------------------------------

    def query(self, entity_id: str) -> HealthState:
        with self._lock:
            st = self._states.get(entity_id)
            if st is None:
                raise UnknownEntity(f"Unknown entity '{entity_id}'")
            return st.copy()

    def status_of(self, entity_id: str) -> Status:
        """Like ``query`` but an unregistered entity reads as ``unknown``."""
        with self._lock:
            st = self._states.get(entity_id)
            return st.status if st is not None else Status.UNKNOWN

    def snapshot(self) -> dict[str, HealthState]:
        with self._lock:
            return {k: v.copy() for k, v in self._states.items()}

    def wait_until(
        self,
        entity_id: str,
        statuses: Iterable[Status],
        timeout: float,
        cancel: Event | None = None,
    ) -> HealthState:
        """Block until the entity's status is one of ``statuses`` or the timeout expires.

        Returns the last known state either way; raises UnknownEntity if the
        entity is removed while waiting.
        """
        wanted = set(statuses)
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                st = self._states.get(entity_id)
                if st is None:
                    raise UnknownEntity(f"Unknown entity '{entity_id}'")
                if st.status in wanted:
                    return st.copy()
                remaining = deadline - time.monotonic()
                if remaining <= 0 or (cancel is not None and cancel.is_set()):
                    return st.copy()
                # Short slices so a cancel set from another thread is noticed.
                self._cond.wait(min(remaining, 0.05) if cancel is not None else remaining)

    # -- subscriptions --------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _publish(self, event: HealthEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(event)
            except Exception as e:
                db.log_event("ERROR", f"Health subscriber failed: {type(e).__name__}: {e}", subject=event.entity_id)
