from __future__ import annotations

import math
import re
import secrets
from dataclasses import dataclass

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from .db import log_event
from .health import http_probe
from .registry import Probe
from .runtime import InstanceSlot, Revision


TIER_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
SLOT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$")

# SIGKILL after the stop timeout shows up as exit code 128 + 9.
_KILLED_EXIT_CODE = 137


def validate_tier_name(name: str) -> None:
    if not TIER_NAME_RE.match(name):
        raise ValueError(
            "Invalid tier name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_slot_id(slot_id: str) -> None:
    if not SLOT_ID_RE.match(slot_id):
        raise ValueError("Invalid slot id. Use letters/numbers and -._ (max 64 chars).")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes cannot be pointed at arbitrary hosts.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network(network: str) -> None:
    if not docker_available():
        return
    c = _client()
    try:
        c.networks.get(network)
    except NotFound:
        c.networks.create(network, driver="bridge")
        log_event("INFO", f"Created docker network '{network}'.")


def ensure_image(image: str) -> None:
    """Pull ``image`` unless it is already present locally."""
    if not docker_available():
        raise RuntimeError("Docker is not available. Start the docker daemon and try again.")
    c = _client()
    try:
        c.images.get(image)
        return
    except ImageNotFound:
        pass
    c.images.pull(image)
    log_event("INFO", f"Pulled image {image}")


def create_instance_container(
    tier: str,
    slot_id: str,
    revision: str,
    image: str,
    network: str,
    env: dict[str, str] | None = None,
    command: list[str] | None = None,
) -> ContainerRef:
    """Create and start a container for one instance slot.

    Labels record the owning tier, slot and revision for operators inspecting the host.
    """
    validate_tier_name(tier)
    validate_slot_id(slot_id)
    ensure_network(network)

    if not docker_available():
        raise RuntimeError("Docker is not available. Start the docker daemon and try again.")

    rand = secrets.token_hex(3)
    name = f"tdc-{slot_id}-{rand}"
    labels: dict[str, str] = {
        "tdc.tier": tier,
        "tdc.slot": slot_id,
        "tdc.revision": revision,
    }

    c = _client()
    container = c.containers.run(
        image,
        command=command,
        detach=True,
        name=name,
        environment=env or {},
        network=network,
        labels=labels,
        # Replacement is the controller's job; keep Docker's restart policy off.
        restart_policy={"Name": "no"},
    )

    log_event("INFO", f"Started container {name} from image {image}", tier=tier, subject=slot_id)
    return ContainerRef(id=container.id, name=name)


def stop_container(container_id: str, timeout_s: float) -> bool:
    """SIGTERM, wait up to ``timeout_s``, then SIGKILL.

    Returns True if the container exited on its own.
    """
    if not docker_available():
        return False
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.stop(timeout=max(1, int(math.ceil(timeout_s))))
        cont.reload()
    except NotFound:
        return True
    return cont.attrs.get("State", {}).get("ExitCode") != _KILLED_EXIT_CODE


def remove_container(container_id: str, force: bool = True) -> None:
    if not docker_available():
        return
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.remove(force=force)
    except NotFound:
        return


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


class DockerDriver:
    """InstanceDriver that runs every slot as a container on one network."""

    def __init__(self, network: str, port: int, health_path: str = "/health", probe_timeout_s: float = 2.0):
        validate_health_path(health_path)
        self.network = network
        self.port = int(port)
        self.health_path = health_path
        self.probe_timeout_s = float(probe_timeout_s)

    def prepare(self, revision: Revision) -> None:
        ensure_image(revision.artifact)

    def start(self, slot: InstanceSlot, env: dict[str, str]) -> ContainerRef:
        return create_instance_container(
            tier=slot.tier,
            slot_id=slot.id,
            revision=slot.revision.artifact,
            image=slot.revision.artifact,
            network=self.network,
            env=env,
        )

    def probe(self, slot: InstanceSlot) -> Probe:
        ref: ContainerRef = slot.handle
        url = f"{container_http_base(ref.name, self.port)}{self.health_path}"
        return http_probe(url, timeout_s=self.probe_timeout_s)

    def drain(self, slot: InstanceSlot, timeout_s: float) -> bool:
        ref: ContainerRef = slot.handle
        return stop_container(ref.id, timeout_s)

    def terminate(self, slot: InstanceSlot) -> None:
        ref: ContainerRef = slot.handle
        remove_container(ref.id, force=True)
