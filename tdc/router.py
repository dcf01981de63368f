from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Condition, Event, RLock
from typing import Callable, Iterable

from . import db
from .errors import TdcError
from .registry import HealthRegistry
from .runtime import HealthEvent, InstanceSlot, Phase, Status

TableSubscriber = Callable[[frozenset], None]


class NoHealthyBackends(TdcError):
    pass


@dataclass(frozen=True)
class DrainDecision:
    safe: bool
    eligible_before: int
    eligible_after: int


class TrafficRouter:
    """Routing table for one tier.

    The table is derived, never edited: it is the set of tracked slots whose
    phase is ``active`` and whose health is ``healthy``. Every lifecycle change
    goes through this object and every health flip of a tracked slot triggers
    a recompute under the same lock, so the table and the unavailability check
    in ``begin_drain`` always see one consistent view.
    """

    def __init__(self, tier: str, registry: HealthRegistry):
        self.tier = tier
        self.registry = registry
        self._lock = RLock()
        self._cond = Condition(self._lock)
        self._slots: dict[str, InstanceSlot] = {}
        self._table: frozenset = frozenset()
        self._rr_index = 0
        self._subscribers: list[TableSubscriber] = []
        self._unsubscribe = registry.subscribe(self._on_health)

    def close(self) -> None:
        self._unsubscribe()

    # -- single writer path -------------------------------------------------

    def track(self, slot: InstanceSlot) -> None:
        with self._lock:
            self._slots[slot.id] = slot
            self._recompute()

    def set_phase(self, slot_id: str, phase: Phase) -> None:
        with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None:
                return
            slot.phase = phase
            self._recompute()

    def forget(self, slot_id: str) -> None:
        with self._lock:
            slot = self._slots.pop(slot_id, None)
            if slot is not None:
                slot.phase = Phase.TERMINATED
            self._recompute()

    def begin_drain(self, slot_ids: Iterable[str], floor: int) -> DrainDecision:
        """Atomically move slots to ``draining`` unless that breaks the floor.

        The floor is never below one: emptying the table is always refused
        while it would actually shrink it. An unsafe decision changes nothing.
        """
        ids = set(slot_ids)
        with self._lock:
            floor = max(int(floor), 1)
            current = self._eligible()
            after = current - ids
            if len(after) < floor and len(after) < len(current):
                return DrainDecision(safe=False, eligible_before=len(current), eligible_after=len(after))
            for sid in ids:
                slot = self._slots.get(sid)
                if slot is not None and slot.phase is not Phase.TERMINATED:
                    slot.phase = Phase.DRAINING
            self._recompute()
            return DrainDecision(safe=True, eligible_before=len(current), eligible_after=len(self._table))

    def _on_health(self, event: HealthEvent) -> None:
        with self._lock:
            if event.entity_id not in self._slots:
                return
            self._recompute()

    def _eligible(self) -> frozenset:
        return frozenset(
            sid
            for sid, slot in self._slots.items()
            if slot.phase is Phase.ACTIVE and self.registry.status_of(sid) is Status.HEALTHY
        )

    def _recompute(self) -> None:
        table = self._eligible()
        if table == self._table:
            return
        removed = sorted(self._table - table)
        added = sorted(table - self._table)
        self._table = table
        self._cond.notify_all()
        for cb in list(self._subscribers):
            cb(table)
        parts = []
        if added:
            parts.append(f"+{','.join(added)}")
        if removed:
            parts.append(f"-{','.join(removed)}")
        db.log_event("INFO", f"Routing table {' '.join(parts)} ({len(table)} eligible)", tier=self.tier)

    # -- reads --------------------------------------------------------------

    def _live(self) -> frozenset:
        # The registry commits a flip before it notifies us, so re-check members.
        return frozenset(sid for sid in self._table if self.registry.status_of(sid) is Status.HEALTHY)

    def current_set(self) -> frozenset:
        with self._lock:
            return self._live()

    def eligible_count(self) -> int:
        with self._lock:
            return len(self._live())

    def slots(self) -> list[InstanceSlot]:
        with self._lock:
            return list(self._slots.values())

    def await_min(self, min_count: int, timeout: float | None = None, cancel: Event | None = None) -> bool:
        """Block until at least ``min_count`` members are eligible.

        Returns False on timeout or cancellation.
        """
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        with self._cond:
            while len(self._table) < min_count:
                if cancel is not None and cancel.is_set():
                    return False
                wait = 0.05 if cancel is not None else None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            return True

    def pick(self) -> str:
        """Round-robin across the routing table."""
        with self._lock:
            members = sorted(self._live())
            if not members:
                raise NoHealthyBackends(f"No healthy backends for tier '{self.tier}'.")
            i = self._rr_index % len(members)
            self._rr_index = (i + 1) % len(members)
            return members[i]

    # -- subscriptions --------------------------------------------------------

    def subscribe(self, callback: TableSubscriber) -> Callable[[], None]:
        """Callbacks run under the router lock, in table order; keep them short."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe
