from __future__ import annotations

import math
import time
from threading import Event, RLock, Thread
from typing import Any, Callable, Optional

from . import alerts, db
from .errors import NoHealthyReplica, PrimaryUnreachable, UnknownEntity
from .registry import HealthRegistry, Probe
from .runtime import DatastoreNode, HealthEvent, Role, RoleChange, Status, utc_now

LagProbe = Callable[[], Optional[float]]

DATASTORE = "datastore"


class ReplicaRouter:
    """Chooses the writable primary and the read targets of the datastore.

    The primary is whatever the last entry of the role history says. Entries
    are only ever appended: a promotion demotes the old primary to replica in
    the same step, and a recovered node never takes the role back on its own.

    A primary that turns unhealthy is given ``confirmation_window_s`` to
    recover. After that the healthiest replica with the lowest lag (then the
    lowest id) is promoted. With no eligible replica the write path is fenced
    and ``write_target`` fails closed until a promotion happens.
    """

    def __init__(
        self,
        registry: HealthRegistry,
        confirmation_window_s: float,
        eval_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if confirmation_window_s < 0 or eval_interval_s <= 0:
            raise ValueError("confirmation_window_s must be >= 0 and eval_interval_s > 0")
        self.registry = registry
        self.confirmation_window_s = float(confirmation_window_s)
        self.eval_interval_s = float(eval_interval_s)
        self._clock = clock
        self._lock = RLock()
        self._nodes: dict[str, DatastoreNode] = {}
        self._lag_probes: dict[str, LagProbe] = {}
        self._history: list[RoleChange] = []
        self._down_since: float | None = None
        self._fenced = False
        self._rr_index = 0
        self._promotion_listeners: list[Callable[[RoleChange], None]] = []
        self._stop = Event()
        self._thr: Thread | None = None
        self._unsubscribe = registry.subscribe(self._on_health)

    # -- membership -------------------------------------------------------

    def add_node(
        self,
        node_id: str,
        role: Role = Role.REPLICA,
        lag: float = 0.0,
        probe: Probe | None = None,
        lag_probe: LagProbe | None = None,
    ) -> DatastoreNode:
        with self._lock:
            if node_id in self._nodes:
                raise ValueError(f"Datastore node '{node_id}' already added")
            if role is Role.PRIMARY and self._history:
                raise ValueError(f"Primary already designated ({self._history[-1].node_id})")
            node = DatastoreNode(id=node_id, role=role, replication_lag=float(lag))
            self._nodes[node_id] = node
            if lag_probe is not None:
                self._lag_probes[node_id] = lag_probe
            self.registry.register(node_id, probe, tier=DATASTORE)
            if role is Role.PRIMARY:
                self._append(node_id, None, "bootstrap")
            return node

    def set_lag(self, node_id: str, lag: float) -> None:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise UnknownEntity(f"Unknown datastore node '{node_id}'")
            node.replication_lag = float(lag)

    def on_promotion(self, callback: Callable[[RoleChange], None]) -> None:
        with self._lock:
            self._promotion_listeners.append(callback)

    # -- role history ---------------------------------------------------------

    def _append(self, node_id: str, previous: str | None, reason: str) -> RoleChange:
        change = RoleChange(
            seq=len(self._history) + 1,
            at=utc_now(),
            node_id=node_id,
            previous_primary=previous,
            reason=reason,
        )
        self._history.append(change)
        db.append_role_change(change)
        return change

    def history(self) -> list[RoleChange]:
        with self._lock:
            return list(self._history)

    def primary(self) -> str:
        with self._lock:
            if not self._history:
                raise NoHealthyReplica("No primary has been designated")
            return self._history[-1].node_id

    def role_of(self, node_id: str) -> Role:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise UnknownEntity(f"Unknown datastore node '{node_id}'")
            return node.role

    # -- targets --------------------------------------------------------------

    def write_target(self) -> str:
        with self._lock:
            primary = self.primary()
            if self._fenced:
                raise NoHealthyReplica(f"Primary {primary} failed and no replica is healthy; writes are fenced")
            if self.registry.status_of(primary) is Status.HEALTHY:
                return primary
            raise PrimaryUnreachable(primary)

    def read_target(self) -> str:
        """Round-robin across healthy replicas, falling back to a usable primary."""
        with self._lock:
            replicas = sorted(
                n.id
                for n in self._nodes.values()
                if n.role is Role.REPLICA and self.registry.status_of(n.id) is Status.HEALTHY
            )
            if replicas:
                i = self._rr_index % len(replicas)
                self._rr_index = (i + 1) % len(replicas)
                return replicas[i]
            if self._history and not self._fenced:
                primary = self._history[-1].node_id
                if self.registry.status_of(primary) is Status.HEALTHY:
                    return primary
            raise NoHealthyReplica("No healthy datastore node available for reads")

    def ranked_replicas(self, healthy_only: bool = False) -> list[DatastoreNode]:
        with self._lock:
            nodes = [n for n in self._nodes.values() if n.role is Role.REPLICA]
            if healthy_only:
                nodes = [n for n in nodes if self.registry.status_of(n.id) is Status.HEALTHY]
            return sorted(nodes, key=lambda n: (n.replication_lag, n.id))

    # -- failover -------------------------------------------------------------

    def _on_health(self, event: HealthEvent) -> None:
        with self._lock:
            if not self._history or event.entity_id != self._history[-1].node_id:
                return
            if event.current is Status.UNHEALTHY and self._down_since is None:
                self._down_since = self._clock()
                db.log_event(
                    "WARN",
                    f"{PrimaryUnreachable(event.entity_id)}; confirming for {self.confirmation_window_s}s before promotion",
                    tier=DATASTORE,
                    subject=event.entity_id,
                )
            elif event.current is Status.HEALTHY and not self._fenced:
                self._down_since = None

    def _poll_lag(self) -> None:
        with self._lock:
            probes = dict(self._lag_probes)
        for node_id, probe in probes.items():
            try:
                lag = probe()
            except Exception as e:
                db.log_event("WARN", f"Lag probe failed: {type(e).__name__}: {e}", tier=DATASTORE, subject=node_id)
                continue
            if lag is not None:
                with self._lock:
                    if node_id in self._nodes:
                        self._nodes[node_id].replication_lag = float(lag)

    def evaluate(self) -> str | None:
        """One pass of the failover loop. Returns the newly promoted node, if any."""
        self._poll_lag()
        with self._lock:
            if not self._history:
                return None
            primary = self._history[-1].node_id
            status = self.registry.status_of(primary)
            if not self._fenced:
                if status is not Status.UNHEALTHY:
                    self._down_since = None
                    return None
                now = self._clock()
                if self._down_since is None:
                    self._down_since = now
                if now - self._down_since < self.confirmation_window_s:
                    return None
            candidates = self.ranked_replicas(healthy_only=True)
            if not candidates:
                if not self._fenced:
                    self._fenced = True
                    db.log_event(
                        "ERROR",
                        f"Primary {primary} confirmed down and no healthy replica; write path fenced",
                        tier=DATASTORE,
                        subject=primary,
                    )
                return None
            change = self._promote(candidates[0].id, reason="primary failure")
        self._announce(change)
        return change.node_id

    def promote(self, node_id: str, reason: str = "manual") -> RoleChange:
        """Operator override.

        A healthy replica takes the primary role. The current primary can only
        be named while fenced and healthy again, which lifts the fence.
        """
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise UnknownEntity(f"Unknown datastore node '{node_id}'")
            if self.registry.status_of(node_id) is not Status.HEALTHY:
                raise NoHealthyReplica(f"Node {node_id} is not healthy")
            if node.role is Role.PRIMARY:
                if not self._fenced:
                    raise ValueError(f"Node {node_id} is already primary")
                self._fenced = False
                self._down_since = None
                change = self._append(node_id, node_id, f"{reason} (reinstated)")
                db.log_event("WARN", f"Primary {node_id} reinstated by operator", tier=DATASTORE, subject=node_id)
            else:
                change = self._promote(node_id, reason=reason)
        self._announce(change)
        return change

    def _promote(self, node_id: str, reason: str) -> RoleChange:
        previous = self._history[-1].node_id if self._history else None
        if previous is not None and previous in self._nodes:
            # Demote before promoting so there is never a moment with two primaries.
            self._nodes[previous].role = Role.REPLICA
            # It has replicated nothing from the new primary yet; rank it last
            # until a lag probe or set_lag reports a real figure.
            self._nodes[previous].replication_lag = math.inf
            db.log_event("WARN", "Demoted to replica (lag unknown)", tier=DATASTORE, subject=previous)
        self._nodes[node_id].role = Role.PRIMARY
        self._fenced = False
        self._down_since = None
        change = self._append(node_id, previous, reason)
        db.log_event(
            "WARN",
            f"Promoted to primary (was {previous or '-'}, lag {self._nodes[node_id].replication_lag}): {reason}",
            tier=DATASTORE,
            subject=node_id,
        )
        return change

    def _announce(self, change: RoleChange) -> None:
        alerts.notify_promotion(change.previous_primary, change.node_id, change.reason)
        with self._lock:
            listeners = list(self._promotion_listeners)
        for cb in listeners:
            cb(change)

    # -- loop -------------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="replica-router", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self._unsubscribe()

    def _loop(self) -> None:
        db.log_event("INFO", "Replica router started", tier=DATASTORE)
        while not self._stop.is_set():
            try:
                self.evaluate()
            except Exception as e:
                db.log_event("ERROR", f"Replica evaluation failed: {type(e).__name__}: {e}", tier=DATASTORE)
            self._stop.wait(self.eval_interval_s)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            primary = self._history[-1].node_id if self._history else None
            return {
                "primary": primary,
                "fenced": self._fenced,
                "nodes": [
                    {
                        "id": n.id,
                        "role": n.role.value,
                        "replication_lag": None if math.isinf(n.replication_lag) else n.replication_lag,
                        "health": self.registry.status_of(n.id).value,
                    }
                    for n in sorted(self._nodes.values(), key=lambda n: n.id)
                ],
                "ranking": [n.id for n in self.ranked_replicas()],
                "history": [c.to_dict() for c in self._history],
            }
