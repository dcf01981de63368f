from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import PromoteRequest, ProvisionRequest, ReleaseRequest
from .control import ControlPlane
from .errors import ConflictError, NoHealthyReplica, PrimaryUnreachable, StartupTimeout, UnknownEntity
from .logger import setup_logging
from .runtime import Revision
from .settings import Settings, settings

security = HTTPBasic()


def create_app(plane: ControlPlane, cfg: Settings = settings, manage_lifecycle: bool = True) -> FastAPI:
    """Operator API over a control plane.

    With ``manage_lifecycle`` the plane is started and stopped with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            plane.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                plane.stop()

    app = FastAPI(title="Tier Delivery Controller", lifespan=lifespan)
    app.state.plane = plane

    def require_operator(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        user_ok = secrets.compare_digest(credentials.username.encode(), cfg.admin_user.encode())
        pass_ok = secrets.compare_digest(credentials.password.encode(), cfg.admin_password.encode())
        if not (user_ok and pass_ok):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(UnknownEntity)
    async def _unknown(_: Request, exc: UnknownEntity) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(NoHealthyReplica)
    async def _no_replica(_: Request, exc: NoHealthyReplica) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(PrimaryUnreachable)
    async def _primary_down(_: Request, exc: PrimaryUnreachable) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(StartupTimeout)
    async def _startup(_: Request, exc: StartupTimeout) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _bad_value(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    # -- releases ---------------------------------------------------------------

    @app.post("/releases", status_code=202)
    def submit_release(req: ReleaseRequest, user: str = Depends(require_operator)) -> dict[str, Any]:
        revisions = {
            tier: Revision(tier=tier, artifact=spec.artifact, labels=dict(spec.labels))
            for tier, spec in req.tiers.items()
        }
        overrides = {
            tier: {k: v for k, v in (("batch_size", spec.batch_size), ("max_unavailable", spec.max_unavailable)) if v is not None}
            for tier, spec in req.tiers.items()
        }
        run_id = plane.pipeline.submit_release(revisions, release_id=req.release_id, overrides=overrides)
        db.log_event("INFO", f"Release submitted by {user}: run {run_id}")
        return {"run_id": run_id}

    @app.get("/runs")
    def list_runs() -> list[dict[str, Any]]:
        return plane.pipeline.list_runs()

    @app.get("/runs/{run_id}")
    def run_status(run_id: str) -> dict[str, Any]:
        return plane.pipeline.status(run_id)

    @app.post("/runs/{run_id}/abort")
    def abort_run(run_id: str, user: str = Depends(require_operator)) -> dict[str, Any]:
        run = plane.pipeline.abort(run_id)
        db.log_event("WARN", f"Abort of run {run_id} requested by {user}")
        return run.to_dict()

    # -- tiers ------------------------------------------------------------------

    @app.get("/tiers")
    def tiers() -> list[dict[str, Any]]:
        return [plane.tier_status(t) for t in plane.pipeline.order]

    @app.get("/tiers/{tier}")
    def tier(tier: str) -> dict[str, Any]:
        if tier not in plane.controllers:
            raise UnknownEntity(f"Unknown tier '{tier}'")
        return plane.tier_status(tier)

    @app.post("/tiers/{tier}/provision", status_code=201)
    def provision(tier: str, req: ProvisionRequest, user: str = Depends(require_operator)) -> dict[str, Any]:
        controller = plane.controllers.get(tier)
        if controller is None:
            raise UnknownEntity(f"Unknown tier '{tier}'")
        revision = Revision(tier=tier, artifact=req.artifact, labels=dict(req.labels))
        controller.prepare(revision)
        slots = controller.provision(revision, req.count)
        db.log_event("INFO", f"Provisioned {len(slots)} instance(s) at {req.artifact} by {user}", tier=tier)
        return {"tier": tier, "slots": [s.id for s in slots]}

    # -- datastore --------------------------------------------------------------

    @app.get("/datastore")
    def datastore() -> dict[str, Any]:
        return plane.replicas.snapshot()

    @app.get("/datastore/write-target")
    def write_target() -> dict[str, str]:
        return {"node_id": plane.replicas.write_target()}

    @app.get("/datastore/read-target")
    def read_target() -> dict[str, str]:
        return {"node_id": plane.replicas.read_target()}

    @app.post("/datastore/{node_id}/promote")
    def promote(node_id: str, req: PromoteRequest | None = None, user: str = Depends(require_operator)) -> dict[str, Any]:
        reason = req.reason if req else "manual"
        change = plane.replicas.promote(node_id, reason=f"{reason} by {user}")
        return change.to_dict()

    # -- events -----------------------------------------------------------------

    @app.get("/events")
    def events(limit: int = 100, tier: str | None = None) -> list[dict[str, Any]]:
        limit = max(1, min(1000, int(limit)))
        return db.latest_events(limit=limit, tier=tier)

    return app


def build_app() -> FastAPI:
    """Factory for ``uvicorn --factory tdc.api:build_app``."""
    setup_logging(settings.log_level)
    return create_app(ControlPlane.from_settings(settings))
