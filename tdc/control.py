from __future__ import annotations

from functools import partial
from typing import Any

from . import db
from .health import fetch_replication_lag, http_probe
from .pipeline import PipelineController
from .registry import HealthRegistry
from .replicas import ReplicaRouter
from .rollouts import ConfigProvider, DeploymentController, InstanceDriver
from .router import TrafficRouter
from .runtime import Role
from .settings import Settings, settings


class ControlPlane:
    """All controllers for one tier set, sharing a single health registry."""

    def __init__(
        self,
        registry: HealthRegistry,
        routers: dict[str, TrafficRouter],
        controllers: dict[str, DeploymentController],
        replicas: ReplicaRouter,
        pipeline: PipelineController,
    ):
        self.registry = registry
        self.routers = routers
        self.controllers = controllers
        self.replicas = replicas
        self.pipeline = pipeline

    @classmethod
    def from_settings(
        cls,
        cfg: Settings = settings,
        driver: InstanceDriver | None = None,
        config_provider: ConfigProvider | None = None,
    ) -> ControlPlane:
        if driver is None:
            from .docker_ops import DockerDriver

            driver = DockerDriver(
                network=cfg.docker_network,
                port=cfg.instance_port,
                health_path=cfg.health_path,
                probe_timeout_s=cfg.probe_timeout_s,
            )
        if not cfg.tiers:
            raise ValueError("At least one tier must be configured (TDC_TIERS)")

        registry = HealthRegistry(
            interval_s=cfg.probe_interval_s,
            probe_timeout_s=cfg.probe_timeout_s,
            success_threshold=cfg.success_threshold,
            failure_threshold=cfg.failure_threshold,
        )
        routers = {tier: TrafficRouter(tier, registry) for tier in cfg.tiers}
        controllers = {
            tier: DeploymentController(
                tier,
                driver,
                registry,
                routers[tier],
                startup_timeout_s=cfg.startup_timeout_s,
                startup_retries=cfg.startup_retries,
                drain_timeout_s=cfg.drain_timeout_s,
                capacity_wait_s=cfg.capacity_wait_s,
                config_provider=config_provider,
            )
            for tier in cfg.tiers
        }
        replicas = ReplicaRouter(
            registry,
            confirmation_window_s=cfg.confirmation_window_s,
            eval_interval_s=cfg.replica_eval_interval_s,
        )
        for i, (node_id, url) in enumerate(cfg.datastore_endpoints()):
            replicas.add_node(
                node_id,
                role=Role.PRIMARY if i == 0 else Role.REPLICA,
                probe=http_probe(url, timeout_s=cfg.probe_timeout_s),
                lag_probe=partial(fetch_replication_lag, url, cfg.probe_timeout_s),
            )
        pipeline = PipelineController(
            controllers,
            order=cfg.tiers,
            batch_size=cfg.batch_size,
            max_unavailable=cfg.max_unavailable,
            step_retries=cfg.step_retries,
            step_backoff_s=cfg.step_backoff_s,
        )
        return cls(registry, routers, controllers, replicas, pipeline)

    def start(self) -> None:
        db.init_db()
        self.replicas.start()
        db.log_event("INFO", f"Control plane started for tiers {', '.join(self.pipeline.order)}")

    def stop(self) -> None:
        self.replicas.stop()
        for router in self.routers.values():
            router.close()
        self.registry.stop()

    def tier_status(self, tier: str) -> dict[str, Any]:
        return self.controllers[tier].snapshot()
