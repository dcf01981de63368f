from __future__ import annotations


class TdcError(Exception):
    """Base class for controller errors."""


class TransientProbeFailure(TdcError):
    """A single probe failed or timed out. Absorbed by hysteresis."""

    def __init__(self, entity_id: str, detail: str) -> None:
        super().__init__(f"Probe failed for {entity_id}: {detail}")
        self.entity_id = entity_id
        self.detail = detail


class StartupTimeout(TdcError):
    """A new instance did not become healthy within its startup budget."""

    def __init__(self, slot_id: str, detail: str = "did not become healthy") -> None:
        super().__init__(f"Instance {slot_id} {detail}")
        self.slot_id = slot_id


class DrainTimeout(TdcError):
    """In-flight work on a draining instance outlived the drain timeout."""

    def __init__(self, slot_id: str, timeout_s: float) -> None:
        super().__init__(f"Instance {slot_id} did not drain within {timeout_s}s; forcing termination")
        self.slot_id = slot_id
        self.timeout_s = timeout_s


class ConflictError(TdcError):
    """Another plan or run already holds the single-flight token."""


class PrimaryUnreachable(TdcError):
    """The primary is not healthy; promotion pending confirmation."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Primary {node_id} is unreachable")
        self.node_id = node_id


class NoHealthyReplica(TdcError):
    """No datastore node can take the requested role."""


class PipelineStepFailure(TdcError):
    """A pipeline step failed after its retry budget."""

    def __init__(self, tier: str, attempts: int, cause: BaseException | None = None) -> None:
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Step for tier '{tier}' failed after {attempts} attempt(s){detail}")
        self.tier = tier
        self.attempts = attempts
        self.cause = cause


class UnknownEntity(TdcError, KeyError):
    """Lookup of an id that is not (or no longer) known."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown entity"
