from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Condition, Event, Lock
from typing import Any, Callable, Protocol, Sequence

from . import alerts, db
from .errors import ConflictError, DrainTimeout, StartupTimeout, UnknownEntity
from .registry import HealthRegistry, Probe
from .router import TrafficRouter
from .runtime import DeploymentPlan, InstanceSlot, Phase, PlanStatus, Revision, Status, utc_now

ProgressSubscriber = Callable[[str, dict], None]
ConfigProvider = Callable[[InstanceSlot], dict]


class InstanceDriver(Protocol):
    """Creates and destroys the compute behind an InstanceSlot."""

    def prepare(self, revision: Revision) -> None: ...

    def start(self, slot: InstanceSlot, env: dict[str, str]) -> Any: ...

    def probe(self, slot: InstanceSlot) -> Probe: ...

    def drain(self, slot: InstanceSlot, timeout_s: float) -> bool: ...

    def terminate(self, slot: InstanceSlot) -> None: ...


class _Abort(Exception):
    pass


def plan_batches(items: Sequence[Any], batch_size: int) -> list[list[Any]]:
    """Split items into consecutive batches."""
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    items = list(items)
    return [items[i:i + batch_size] for i in range(0, len(items), batch_size)]


class DeploymentController:
    """Rolling revision updates for one tier.

    Waves start new slots first and drain old ones only after their
    replacements are healthy and routed, so the tier surges above N instead of
    dipping below it. Every drain still goes through the router's floor check
    (N - max_unavailable) because new slots can fall out of the table on their
    own between waves.

    One plan at a time per tier: the flight lock is taken without blocking and
    a second caller gets ConflictError.
    """

    def __init__(
        self,
        tier: str,
        driver: InstanceDriver,
        registry: HealthRegistry,
        router: TrafficRouter,
        startup_timeout_s: float,
        startup_retries: int,
        drain_timeout_s: float,
        capacity_wait_s: float,
        config_provider: ConfigProvider | None = None,
    ):
        if startup_timeout_s <= 0 or drain_timeout_s <= 0 or capacity_wait_s <= 0:
            raise ValueError("startup_timeout_s, drain_timeout_s and capacity_wait_s must be > 0")
        if startup_retries < 0:
            raise ValueError("startup_retries must be >= 0")
        self.tier = tier
        self.driver = driver
        self.registry = registry
        self.router = router
        self.startup_timeout_s = float(startup_timeout_s)
        self.startup_retries = int(startup_retries)
        self.drain_timeout_s = float(drain_timeout_s)
        # How long a deferred drain waits for eligible capacity to recover.
        self.capacity_wait_s = float(capacity_wait_s)
        self.config_provider = config_provider
        self._flight = Lock()
        self._lock = Lock()
        self._idle = Condition(self._lock)
        self._slots: dict[str, InstanceSlot] = {}
        self._seq = 0
        self._active: DeploymentPlan | None = None
        self._last: DeploymentPlan | None = None
        self._subscribers: list[ProgressSubscriber] = []

    # -- public surface ---------------------------------------------------------

    @property
    def state(self) -> str:
        with self._lock:
            return "rolling" if self._active is not None else "idle"

    def active_plan(self) -> DeploymentPlan | None:
        with self._lock:
            return self._active

    def slots(self) -> list[InstanceSlot]:
        with self._lock:
            return sorted(self._slots.values(), key=lambda s: s.seq)

    def serving(self) -> list[InstanceSlot]:
        return [s for s in self.slots() if s.phase is Phase.ACTIVE]

    def subscribe(self, callback: ProgressSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._active is None, timeout=timeout)

    def prepare(self, revision: Revision) -> None:
        """Make the artifact available to the driver (e.g. pull an image)."""
        self.driver.prepare(revision)

    def provision(self, revision: Revision, count: int) -> list[InstanceSlot]:
        """Bring up ``count`` slots at ``revision`` outside of any plan.

        This is how a tier gets its first instances, or more of the revision
        it already runs. Changing revision goes through ``deploy``.
        """
        if revision.tier != self.tier:
            raise ValueError(f"Revision for tier '{revision.tier}' cannot run on tier '{self.tier}'")
        if count < 1:
            raise ValueError("count must be >= 1")
        if not self._flight.acquire(blocking=False):
            raise ConflictError(f"Plan in progress for tier '{self.tier}'")
        try:
            running = sorted({s.revision.artifact for s in self.serving() if s.revision.artifact != revision.artifact})
            if running:
                raise ValueError(f"Tier '{self.tier}' runs {', '.join(running)}; deploy {revision.artifact} instead")
            db.log_event("INFO", f"Provisioning {count} instance(s) at {revision}", tier=self.tier)
            with ThreadPoolExecutor(max_workers=max(1, count)) as pool:
                started = list(pool.map(lambda _: self._start_one(revision, None, None), range(count)))
            ok = [s for s in started if s is not None]
            if len(ok) < count:
                raise StartupTimeout(f"{self.tier}/provision", f"started only {len(ok)} of {count} healthy instance(s)")
            return ok
        finally:
            self._flight.release()

    def deploy(self, plan: DeploymentPlan, cancel: Event | None = None) -> PlanStatus:
        """Run a plan to a terminal status. Blocks until done."""
        if plan.tier != self.tier:
            raise ValueError(f"Plan for tier '{plan.tier}' sent to controller for '{self.tier}'")
        if not self._flight.acquire(blocking=False):
            active = self.active_plan()
            raise ConflictError(f"Plan in progress for tier '{self.tier}'" + (f" ({active.id})" if active else ""))
        try:
            plan.start()
            with self._lock:
                self._active = plan
            db.save_plan(plan)
            db.log_event(
                "INFO",
                f"Plan {plan.id}: rolling to {plan.target} (batch={plan.batch_size}, max_unavailable={plan.max_unavailable})",
                tier=self.tier,
            )
            status, message = self._roll(plan, cancel or Event())
            plan.finish(status, message)
            db.save_plan(plan)
            level = "INFO" if status is PlanStatus.SUCCEEDED else "ERROR"
            db.log_event(level, f"Plan {plan.id} {status.value}: {message}", tier=self.tier)
            if status is not PlanStatus.SUCCEEDED:
                alerts.notify_plan(self.tier, plan.id, status.value, message)
            self._emit(plan, "finished", status=status.value, message=message)
            return plan.status
        finally:
            with self._lock:
                if self._active is plan:
                    self._last = plan
                self._active = None
                self._idle.notify_all()
            self._flight.release()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            active = self._active
            last = self._last
            slots = sorted(self._slots.values(), key=lambda s: s.seq)
        routing = self.router.current_set()
        return {
            "tier": self.tier,
            "state": "rolling" if active is not None else "idle",
            "active_plan": active.to_dict() if active else None,
            "last_plan": last.to_dict() if last else None,
            "routing": sorted(routing),
            "slots": [dict(s.to_dict(), health=self.registry.status_of(s.id).value) for s in slots],
        }

    # -- plan execution ---------------------------------------------------------

    def _roll(self, plan: DeploymentPlan, cancel: Event) -> tuple[PlanStatus, str]:
        target = plan.target
        active = self.serving()
        if not active:
            self._emit(plan, "no_instances")
            return PlanStatus.FAILED, f"no serving instances on tier '{self.tier}'; provision it before deploying"
        stale = [s for s in active if s.revision != target]
        if not stale:
            self._emit(plan, "no_updates_needed", count=len(active))
            return PlanStatus.SUCCEEDED, f"{len(active)} instance(s) already at {target}"

        prior = stale[0].revision
        n = len(active)
        floor = max(n - plan.max_unavailable, 0)
        introduced: list[InstanceSlot] = []
        waves = plan_batches(stale, plan.batch_size)
        try:
            for idx, wave in enumerate(waves, start=1):
                if cancel.is_set():
                    raise _Abort("cancelled")
                self._emit(plan, "wave_start", wave=idx, waves=len(waves), replacing=[s.id for s in wave])
                started = self._start_wave(target, len(wave), plan, cancel)
                fresh = [s for s in started if s is not None]
                introduced.extend(fresh)
                if len(fresh) < len(wave):
                    if cancel.is_set():
                        raise _Abort("cancelled")
                    raise _Abort(
                        str(StartupTimeout(f"wave {idx}", f"left {len(wave) - len(fresh)} instance(s) unhealthy after {self.startup_retries + 1} attempt(s)"))
                    )
                self._drain(wave, floor, plan, cancel)
                self._emit(plan, "wave_done", wave=idx, started=[s.id for s in fresh], eligible=self.router.eligible_count())
        except _Abort as e:
            return self._rollback(plan, prior, introduced, n, floor, str(e))
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            db.log_event("ERROR", f"Plan {plan.id} hit an unexpected error: {reason}", tier=self.tier)
            _, message = self._rollback(plan, prior, introduced, n, floor, reason)
            return PlanStatus.FAILED, message
        return PlanStatus.SUCCEEDED, f"{n} instance(s) now at {target}"

    def _rollback(
        self,
        plan: DeploymentPlan,
        prior: Revision,
        introduced: list[InstanceSlot],
        n: int,
        floor: int,
        reason: str,
    ) -> tuple[PlanStatus, str]:
        """Return the tier to ``prior``: survivors of the old revision stay, new slots go.

        Capacity lost in completed waves is restored at the prior revision
        before each new slot is drained. Cancellation is ignored from here on.
        """
        self._emit(plan, "rollback", reason=reason, introduced=[s.id for s in introduced])
        db.log_event("WARN", f"Plan {plan.id} rolling back to {prior}: {reason}", tier=self.tier)
        for slot in introduced:
            if slot.phase is Phase.TERMINATED:
                continue
            at_prior = sum(1 for s in self.serving() if s.revision == prior)
            if at_prior < n:
                replacement = self._start_one(prior, plan, None)
                if replacement is None:
                    return PlanStatus.FAILED, f"{reason}; rollback could not restore an instance at {prior}"
            try:
                self._drain([slot], floor, plan, None)
            except _Abort as e:
                return PlanStatus.FAILED, f"{reason}; rollback stalled: {e}"
        return PlanStatus.ROLLED_BACK, reason

    # -- starting ---------------------------------------------------------------

    def _start_wave(self, revision: Revision, count: int, plan: DeploymentPlan, cancel: Event) -> list[InstanceSlot | None]:
        with ThreadPoolExecutor(max_workers=max(1, count)) as pool:
            return list(pool.map(lambda _: self._start_one(revision, plan, cancel), range(count)))

    def _new_slot(self, revision: Revision) -> InstanceSlot:
        with self._lock:
            self._seq += 1
            slot = InstanceSlot(id=f"{self.tier}-{self._seq}", tier=self.tier, revision=revision, seq=self._seq)
            self._slots[slot.id] = slot
        self.router.track(slot)
        return slot

    def _start_one(self, revision: Revision, plan: DeploymentPlan | None, cancel: Event | None) -> InstanceSlot | None:
        attempts = self.startup_retries + 1
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                return None
            slot = self._new_slot(revision)
            ok, detail = self._boot(slot, cancel)
            if ok:
                self.router.set_phase(slot.id, Phase.ACTIVE)
                db.log_event("INFO", f"Instance started at {revision}", tier=self.tier, subject=slot.id)
                if plan is not None:
                    self._emit(plan, "slot_started", slot=slot.id, revision=revision.artifact, attempt=attempt)
                return slot
            err = StartupTimeout(slot.id, detail)
            db.log_event("WARN", f"{err} (attempt {attempt}/{attempts})", tier=self.tier, subject=slot.id)
            if plan is not None:
                self._emit(plan, "slot_failed", slot=slot.id, revision=revision.artifact, attempt=attempt, detail=detail)
            self._destroy(slot)
        return None

    def _boot(self, slot: InstanceSlot, cancel: Event | None) -> tuple[bool, str]:
        try:
            env = self.config_provider(slot) if self.config_provider else {}
        except Exception as e:
            return False, f"startup configuration unavailable ({type(e).__name__}: {e})"
        try:
            slot.handle = self.driver.start(slot, env)
            probe = self.driver.probe(slot)
        except Exception as e:
            return False, f"failed to start ({type(e).__name__}: {e})"

        self.registry.register(slot.id, probe, tier=self.tier)
        try:
            st = self.registry.wait_until(
                slot.id, {Status.HEALTHY, Status.UNHEALTHY}, timeout=self.startup_timeout_s, cancel=cancel
            )
        except UnknownEntity:
            return False, "removed while starting"
        if st.status is Status.HEALTHY:
            return True, ""
        if cancel is not None and cancel.is_set():
            return False, "cancelled while starting"
        if st.status is Status.UNHEALTHY:
            suffix = f": {st.last_detail}" if st.last_detail else ""
            return False, f"became unhealthy after {st.consecutive_failures} failed probe(s){suffix}"
        return False, f"did not become healthy within {self.startup_timeout_s}s"

    # -- draining ---------------------------------------------------------------

    def _drain(self, slots: list[InstanceSlot], floor: int, plan: DeploymentPlan, cancel: Event | None) -> None:
        ids = [s.id for s in slots]
        deadline = time.monotonic() + self.capacity_wait_s
        while True:
            decision = self.router.begin_drain(ids, floor)
            if decision.safe:
                break
            self._emit(plan, "drain_deferred", slots=ids, eligible=decision.eligible_before, floor=floor)
            db.log_event(
                "WARN",
                f"Drain of {','.join(ids)} deferred: would leave {decision.eligible_after} eligible (floor {max(floor, 1)})",
                tier=self.tier,
            )
            in_table = len(self.router.current_set() & set(ids))
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self.router.await_min(max(floor, 1) + in_table, timeout=remaining, cancel=cancel):
                if cancel is not None and cancel.is_set():
                    raise _Abort("cancelled")
                raise _Abort(f"eligible capacity stayed below {max(floor, 1)}; could not drain {','.join(ids)}")

        with ThreadPoolExecutor(max_workers=max(1, len(slots))) as pool:
            list(pool.map(lambda s: self._retire(s, plan), slots))

    def _retire(self, slot: InstanceSlot, plan: DeploymentPlan) -> None:
        try:
            finished = self.driver.drain(slot, self.drain_timeout_s)
        except Exception as e:
            db.log_event("ERROR", f"Drain failed: {type(e).__name__}: {e}", tier=self.tier, subject=slot.id)
            finished = False
        if not finished:
            db.log_event("WARN", str(DrainTimeout(slot.id, self.drain_timeout_s)), tier=self.tier, subject=slot.id)
            self._emit(plan, "forced_termination", slot=slot.id)
        self._destroy(slot)
        self._emit(plan, "drained", slot=slot.id, revision=slot.revision.artifact, graceful=finished)

    def _destroy(self, slot: InstanceSlot) -> None:
        self.registry.remove(slot.id)
        self.router.forget(slot.id)
        with self._lock:
            self._slots.pop(slot.id, None)
        slot.phase = Phase.TERMINATED
        if slot.handle is None:
            return
        try:
            self.driver.terminate(slot)
        except Exception as e:
            db.log_event("ERROR", f"Terminate failed, instance may be orphaned: {type(e).__name__}: {e}", tier=self.tier, subject=slot.id)

    # -- progress -----------------------------------------------------------------

    def _emit(self, plan: DeploymentPlan, event: str, **fields: Any) -> None:
        entry = {"event": event, "plan": plan.id, "at": utc_now(), **fields}
        plan.history.append(entry)
        with self._lock:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(self.tier, entry)
            except Exception as e:
                db.log_event("ERROR", f"Progress subscriber failed on {event}: {type(e).__name__}: {e}", tier=self.tier)
