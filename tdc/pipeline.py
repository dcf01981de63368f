from __future__ import annotations

import secrets
from threading import Event, Lock, Thread
from typing import Any, Mapping, Sequence

from . import alerts, db
from .errors import ConflictError, PipelineStepFailure, UnknownEntity
from .rollouts import DeploymentController
from .runtime import DeploymentPlan, PipelineRun, PlanStatus, Revision, RunStatus, utc_now


class PipelineController:
    """Sequences one release across tiers in dependency order.

    Only one run may be active for the tier set. A tier whose plan ends
    rolled back or failed stops the run; tiers already succeeded stay on the
    new revision and later tiers are never started.
    """

    def __init__(
        self,
        controllers: Mapping[str, DeploymentController],
        order: Sequence[str],
        batch_size: int,
        max_unavailable: int,
        step_retries: int,
        step_backoff_s: float,
    ):
        missing = [t for t in order if t not in controllers]
        if missing:
            raise ValueError(f"No deployment controller for tier(s): {', '.join(missing)}")
        if step_retries < 0 or step_backoff_s < 0:
            raise ValueError("step_retries and step_backoff_s must be >= 0")
        self.controllers = dict(controllers)
        self.order = list(order)
        self.batch_size = int(batch_size)
        self.max_unavailable = int(max_unavailable)
        self.step_retries = int(step_retries)
        self.step_backoff_s = float(step_backoff_s)
        self._lock = Lock()
        self._runs: dict[str, PipelineRun] = {}
        self._cancels: dict[str, Event] = {}
        self._done: dict[str, Event] = {}
        self._active_run: str | None = None

    def submit_release(
        self,
        revisions: Mapping[str, Revision | str],
        release_id: str | None = None,
        overrides: Mapping[str, Mapping[str, int]] | None = None,
    ) -> str:
        """Start a run for ``revisions`` (tier -> Revision or artifact) and return its id.

        Raises ConflictError while another run is active.
        """
        if not revisions:
            raise ValueError("A release needs at least one tier")
        unknown = sorted(set(revisions) - set(self.order))
        if unknown:
            raise ValueError(f"Unknown tier(s): {', '.join(unknown)}")
        overrides = overrides or {}

        plans: list[DeploymentPlan] = []
        for tier in self.order:
            if tier not in revisions:
                continue
            rev = revisions[tier]
            if isinstance(rev, str):
                rev = Revision(tier=tier, artifact=rev)
            knobs = overrides.get(tier, {})
            batch_size = knobs.get("batch_size")
            max_unavailable = knobs.get("max_unavailable")
            plans.append(
                DeploymentPlan(
                    tier=tier,
                    target=rev,
                    batch_size=self.batch_size if batch_size is None else int(batch_size),
                    max_unavailable=self.max_unavailable if max_unavailable is None else int(max_unavailable),
                )
            )

        with self._lock:
            if self._active_run is not None:
                raise ConflictError(f"Pipeline run {self._active_run} is still active")
            run = PipelineRun(release_id=release_id or secrets.token_hex(4), plans=plans)
            self._runs[run.id] = run
            self._cancels[run.id] = Event()
            self._done[run.id] = Event()
            self._active_run = run.id

        db.save_run(run)
        db.log_event(
            "INFO",
            f"Run {run.id} started for release {run.release_id}: "
            + ", ".join(f"{p.tier}={p.target}" for p in plans),
        )
        Thread(target=self._execute, args=(run.id,), name=f"pipeline-{run.id}", daemon=True).start()
        return run.id

    def abort(self, run_id: str) -> PipelineRun:
        with self._lock:
            run = self._runs.get(run_id)
            cancel = self._cancels.get(run_id)
        if run is None or cancel is None:
            raise UnknownEntity(f"Unknown pipeline run '{run_id}'")
        if run.status is RunStatus.RUNNING and not cancel.is_set():
            cancel.set()
            db.log_event("WARN", f"Run {run_id} abort requested")
        return run

    def wait(self, run_id: str, timeout: float | None = None) -> PipelineRun:
        with self._lock:
            run = self._runs.get(run_id)
            done = self._done.get(run_id)
        if run is None or done is None:
            raise UnknownEntity(f"Unknown pipeline run '{run_id}'")
        done.wait(timeout)
        return run

    def active_run(self) -> str | None:
        with self._lock:
            return self._active_run

    def status(self, run_id: str) -> dict[str, Any]:
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None:
            return run.to_dict()
        # Runs from before a restart are only in the database.
        row = db.get_run(run_id)
        if row is None:
            raise UnknownEntity(f"Unknown pipeline run '{run_id}'")
        return {
            "id": row.id,
            "release_id": row.release_id,
            "status": row.status,
            "message": row.message,
            "current_tier": row.current_tier,
            "started_at": row.started_at,
            "updated_at": row.updated_at,
            "plans": [
                {
                    "id": p.id,
                    "tier": p.tier,
                    "target": p.target,
                    "batch_size": p.batch_size,
                    "max_unavailable": p.max_unavailable,
                    "status": p.status,
                    "message": p.message,
                    "created_at": p.created_at,
                    "finished_at": p.finished_at,
                }
                for p in db.list_plans(run_id)
            ],
        }

    def list_runs(self) -> list[dict[str, Any]]:
        with self._lock:
            runs = list(self._runs.values())
        return [r.to_dict() for r in sorted(runs, key=lambda r: r.started_at, reverse=True)]

    # -- execution ------------------------------------------------------------

    def _execute(self, run_id: str) -> None:
        with self._lock:
            run = self._runs[run_id]
            cancel = self._cancels[run_id]
            done = self._done[run_id]
        try:
            for plan in run.plans:
                if cancel.is_set():
                    self._finish(run, RunStatus.FAILED, "aborted")
                    return
                run.current_tier = plan.tier
                run.updated_at = utc_now()
                db.save_run(run)
                status = self._run_step(plan, cancel)
                if status is None:
                    self._finish(run, RunStatus.FAILED, "aborted")
                    return
                if status is not PlanStatus.SUCCEEDED:
                    detail = "aborted" if cancel.is_set() else f"tier {plan.tier} {status.value}: {plan.message}"
                    self._finish(run, RunStatus.FAILED, detail)
                    return
            self._finish(run, RunStatus.SUCCEEDED, f"{len(run.plans)} tier(s) deployed")
        except PipelineStepFailure as e:
            plan = run.plan_for(e.tier)
            if plan is not None and not plan.status.terminal:
                if plan.status is PlanStatus.PENDING:
                    plan.start()
                plan.finish(PlanStatus.FAILED, str(e))
            self._finish(run, RunStatus.FAILED, str(e))
        except Exception as e:
            db.log_event("ERROR", f"Run {run.id} crashed: {type(e).__name__}: {e}")
            self._finish(run, RunStatus.FAILED, f"{type(e).__name__}: {e}")
        finally:
            with self._lock:
                if self._active_run == run.id:
                    self._active_run = None
            done.set()

    def _run_step(self, plan: DeploymentPlan, cancel: Event) -> PlanStatus | None:
        """Prepare and deploy one tier, retrying transient failures with backoff.

        Returns None if the run was aborted before the plan started.
        """
        controller = self.controllers[plan.tier]
        attempts = self.step_retries + 1
        last: Exception | None = None
        for attempt in range(1, attempts + 1):
            if cancel.is_set():
                return None
            try:
                controller.prepare(plan.target)
                return controller.deploy(plan, cancel=cancel)
            except Exception as e:
                if plan.status is not PlanStatus.PENDING:
                    raise
                last = e
                db.log_event(
                    "WARN",
                    f"Step attempt {attempt}/{attempts} failed: {type(e).__name__}: {e}",
                    tier=plan.tier,
                )
                if attempt < attempts:
                    backoff = min((2 ** (attempt - 1)) * self.step_backoff_s, 30.0)
                    if cancel.wait(backoff):
                        return None
        raise PipelineStepFailure(plan.tier, attempts, last)

    def _finish(self, run: PipelineRun, status: RunStatus, message: str) -> None:
        run.status = status
        run.message = message
        run.updated_at = utc_now()
        db.save_run(run)
        level = "INFO" if status is RunStatus.SUCCEEDED else "ERROR"
        db.log_event(level, f"Run {run.id} {status.value}: {message}")
        if status is RunStatus.FAILED:
            alerts.notify_run(run.id, run.release_id, message)
