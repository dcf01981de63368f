from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("TDC_DB_PATH", "tdc.db")
    log_level: str = os.getenv("TDC_LOG_LEVEL", "INFO")

    # Health probing
    probe_interval_s: float = _env_float("TDC_PROBE_INTERVAL_S", 5.0)
    probe_timeout_s: float = _env_float("TDC_PROBE_TIMEOUT_S", 2.0)
    success_threshold: int = _env_int("TDC_SUCCESS_THRESHOLD", 2)
    failure_threshold: int = _env_int("TDC_FAILURE_THRESHOLD", 3)

    # Rolling updates
    tiers: tuple[str, ...] = field(default_factory=lambda: _env_list("TDC_TIERS", "internal,edge"))
    batch_size: int = _env_int("TDC_BATCH_SIZE", 1)
    max_unavailable: int = _env_int("TDC_MAX_UNAVAILABLE", 1)
    startup_timeout_s: float = _env_float("TDC_STARTUP_TIMEOUT_S", 120.0)
    startup_retries: int = _env_int("TDC_STARTUP_RETRIES", 2)
    drain_timeout_s: float = _env_float("TDC_DRAIN_TIMEOUT_S", 30.0)
    capacity_wait_s: float = _env_float("TDC_CAPACITY_WAIT_S", 120.0)

    # Pipeline
    step_retries: int = _env_int("TDC_STEP_RETRIES", 3)
    step_backoff_s: float = _env_float("TDC_STEP_BACKOFF_S", 2.0)

    # Datastore
    # Comma separated "node_id=health_url" pairs; the first node starts as primary.
    datastore_nodes: tuple[str, ...] = field(default_factory=lambda: _env_list("TDC_DATASTORE_NODES", ""))
    confirmation_window_s: float = _env_float("TDC_CONFIRMATION_WINDOW_S", 15.0)
    replica_eval_interval_s: float = _env_float("TDC_REPLICA_EVAL_INTERVAL_S", 1.0)

    # Docker runtime
    docker_network: str = os.getenv("TDC_DOCKER_NETWORK", "tdc")
    instance_port: int = _env_int("TDC_INSTANCE_PORT", 80)
    health_path: str = os.getenv("TDC_HEALTH_PATH", "/health")

    # Operator API
    admin_user: str = os.getenv("TDC_ADMIN_USER", "admin")
    admin_password: str = os.getenv("TDC_ADMIN_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("TDC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("TDC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("TDC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("TDC_SMTP_USER")
    smtp_password: str | None = os.getenv("TDC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("TDC_EMAIL_FROM")
    email_to: str | None = os.getenv("TDC_EMAIL_TO")

    def datastore_endpoints(self) -> list[tuple[str, str]]:
        """Parse ``datastore_nodes`` into (node_id, health_url) pairs, primary first."""
        out: list[tuple[str, str]] = []
        for item in self.datastore_nodes:
            node_id, sep, url = item.partition("=")
            if not sep or not node_id.strip() or not url.strip():
                raise ValueError(f"Invalid datastore node entry {item!r}; expected 'node_id=health_url'.")
            out.append((node_id.strip(), url.strip()))
        return out


settings = Settings()
