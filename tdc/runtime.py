from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Phase(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    DRAINING = "draining"
    TERMINATED = "terminated"


class Status(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class Role(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


class PlanStatus(str, Enum):
    PENDING = "pending"
    ROLLING = "rolling"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {PlanStatus.SUCCEEDED, PlanStatus.ROLLED_BACK, PlanStatus.FAILED}


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Revision:
    """Immutable artifact reference handed over by the build step."""

    tier: str
    artifact: str
    created_at: str = field(default_factory=utc_now, compare=False)
    labels: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __str__(self) -> str:
        return self.artifact

    def to_dict(self) -> dict[str, Any]:
        return {"tier": self.tier, "artifact": self.artifact, "created_at": self.created_at, "labels": dict(self.labels)}


@dataclass
class InstanceSlot:
    id: str
    tier: str
    revision: Revision
    seq: int
    phase: Phase = Phase.STARTING
    handle: Any = None  # driver-specific reference, e.g. a container id
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier,
            "revision": self.revision.artifact,
            "phase": self.phase.value,
            "created_at": self.created_at,
        }


@dataclass
class HealthState:
    entity_id: str
    status: Status = Status.UNKNOWN
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_probe_at: float | None = None
    last_detail: str = ""

    def copy(self) -> HealthState:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "last_probe_at": self.last_probe_at,
            "last_detail": self.last_detail,
        }


@dataclass(frozen=True)
class HealthEvent:
    entity_id: str
    previous: Status
    current: Status
    at: float


@dataclass
class DatastoreNode:
    id: str
    role: Role
    replication_lag: float = 0.0


@dataclass(frozen=True)
class RoleChange:
    """One entry of the append-only primary history."""

    seq: int
    at: str
    node_id: str
    previous_primary: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "at": self.at,
            "node_id": self.node_id,
            "previous_primary": self.previous_primary,
            "reason": self.reason,
        }


@dataclass
class DeploymentPlan:
    tier: str
    target: Revision
    batch_size: int
    max_unavailable: int
    id: str = field(default_factory=lambda: secrets.token_hex(6))
    status: PlanStatus = PlanStatus.PENDING
    message: str = ""
    created_at: str = field(default_factory=utc_now)
    finished_at: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_unavailable < 0:
            raise ValueError("max_unavailable must be >= 0")
        if self.target.tier != self.tier:
            raise ValueError(f"Revision for tier '{self.target.tier}' cannot be deployed to tier '{self.tier}'")

    def start(self) -> None:
        if self.status is not PlanStatus.PENDING:
            raise ValueError(f"Plan {self.id} already {self.status.value}")
        self.status = PlanStatus.ROLLING

    def finish(self, status: PlanStatus, message: str = "") -> None:
        if self.status.terminal:
            raise ValueError(f"Plan {self.id} is terminal ({self.status.value})")
        if not status.terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        self.message = message
        self.finished_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier,
            "target": self.target.artifact,
            "batch_size": self.batch_size,
            "max_unavailable": self.max_unavailable,
            "status": self.status.value,
            "message": self.message,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


@dataclass
class PipelineRun:
    release_id: str
    plans: list[DeploymentPlan]
    id: str = field(default_factory=lambda: secrets.token_hex(6))
    status: RunStatus = RunStatus.RUNNING
    message: str = ""
    current_tier: str | None = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def plan_for(self, tier: str) -> DeploymentPlan | None:
        for p in self.plans:
            if p.tier == tier:
                return p
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "release_id": self.release_id,
            "status": self.status.value,
            "message": self.message,
            "current_tier": self.current_tier,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "plans": [p.to_dict() for p in self.plans],
        }
