import pytest

from tdc import db
from tdc.errors import ConflictError, UnknownEntity
from tdc.pipeline import PipelineController
from tdc.runtime import PlanStatus, Revision, RunStatus

from conftest import FakeDriver, make_tier, wait_for

TIERS = ("internal", "edge")


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def tiers(registry, driver):
    controllers = {}
    for tier in TIERS:
        _, ctl = make_tier(registry, driver, tier=tier)
        ctl.provision(Revision(tier, "v1"), 2)
        controllers[tier] = ctl
    return controllers


def _pipeline(controllers, step_retries=2, step_backoff_s=0.01):
    return PipelineController(
        controllers,
        order=TIERS,
        batch_size=1,
        max_unavailable=1,
        step_retries=step_retries,
        step_backoff_s=step_backoff_s,
    )


def _artifacts(ctl):
    return {s.revision.artifact for s in ctl.serving()}


def test_release_rolls_tiers_in_order(tiers):
    finished = []
    for ctl in tiers.values():
        ctl.subscribe(lambda tier, entry: entry["event"] == "finished" and finished.append(tier))
    pipeline = _pipeline(tiers)

    run_id = pipeline.submit_release({"edge": "v2", "internal": "v2"}, release_id="build-42")
    run = pipeline.wait(run_id, timeout=20)

    assert run.status is RunStatus.SUCCEEDED
    assert finished == ["internal", "edge"]
    assert [p.tier for p in run.plans] == ["internal", "edge"]
    assert all(_artifacts(ctl) == {"v2"} for ctl in tiers.values())
    assert pipeline.active_run() is None

    row = db.get_run(run_id)
    assert row.status == "succeeded"
    assert row.release_id == "build-42"
    assert [p.status for p in db.list_plans(run_id)] == ["succeeded", "succeeded"]


def test_rolled_back_tier_stops_the_run(tiers, driver):
    driver.healthy = lambda slot: not (slot.tier == "internal" and slot.revision.artifact == "v2")
    pipeline = _pipeline(tiers)

    run = pipeline.wait(pipeline.submit_release({"internal": "v2", "edge": "v2"}), timeout=20)

    assert run.status is RunStatus.FAILED
    assert "internal rolled_back" in run.message
    assert run.plan_for("internal").status is PlanStatus.ROLLED_BACK
    assert run.plan_for("edge").status is PlanStatus.PENDING
    assert _artifacts(tiers["internal"]) == {"v1"}
    assert _artifacts(tiers["edge"]) == {"v1"}
    assert not any(s.startswith("edge") and int(s.split("-")[1]) > 2 for s in driver.started)


def test_earlier_tiers_stay_on_new_revision(tiers, driver):
    driver.healthy = lambda slot: not (slot.tier == "edge" and slot.revision.artifact == "v2")
    pipeline = _pipeline(tiers)

    run = pipeline.wait(pipeline.submit_release({"internal": "v2", "edge": "v2"}), timeout=20)

    assert run.status is RunStatus.FAILED
    assert run.plan_for("internal").status is PlanStatus.SUCCEEDED
    assert run.plan_for("edge").status is PlanStatus.ROLLED_BACK
    assert _artifacts(tiers["internal"]) == {"v2"}
    assert _artifacts(tiers["edge"]) == {"v1"}


def test_single_tier_release(tiers):
    pipeline = _pipeline(tiers)
    run = pipeline.wait(pipeline.submit_release({"edge": "v2"}), timeout=20)
    assert run.status is RunStatus.SUCCEEDED
    assert [p.tier for p in run.plans] == ["edge"]
    assert _artifacts(tiers["internal"]) == {"v1"}


def test_second_release_conflicts_while_running(tiers, driver):
    driver.start_delay = 0.2
    pipeline = _pipeline(tiers)
    run_id = pipeline.submit_release({"internal": "v2", "edge": "v2"})
    assert pipeline.active_run() == run_id

    with pytest.raises(ConflictError):
        pipeline.submit_release({"edge": "v3"})

    assert pipeline.wait(run_id, timeout=20).status is RunStatus.SUCCEEDED
    # The token is released once the run ends.
    driver.start_delay = 0
    follow_up = pipeline.submit_release({"edge": "v3"})
    assert pipeline.wait(follow_up, timeout=20).status is RunStatus.SUCCEEDED


def test_transient_prepare_failure_is_retried(tiers, driver):
    driver.prepare_failures = 2
    pipeline = _pipeline(tiers, step_retries=2)

    run = pipeline.wait(pipeline.submit_release({"internal": "v2"}), timeout=20)

    assert run.status is RunStatus.SUCCEEDED
    assert driver.prepared == ["v2", "v2", "v2"]
    messages = [e["message"] for e in db.latest_events(limit=50, tier="internal")]
    assert any("Step attempt 1/3 failed: ConnectionError" in m for m in messages)


def test_exhausted_retries_fail_the_run(tiers, driver):
    driver.prepare_failures = 10
    pipeline = _pipeline(tiers, step_retries=1)

    run = pipeline.wait(pipeline.submit_release({"internal": "v2", "edge": "v2"}), timeout=20)

    assert run.status is RunStatus.FAILED
    assert "after 2 attempt(s)" in run.message
    assert run.plan_for("internal").status is PlanStatus.FAILED
    assert run.plan_for("edge").status is PlanStatus.PENDING
    assert len(driver.prepared) == 2


def test_abort_rolls_back_current_tier(tiers, driver):
    driver.start_delay = 0.1
    pipeline = _pipeline(tiers)
    run_id = pipeline.submit_release({"internal": "v2", "edge": "v2"})
    assert wait_for(lambda: tiers["internal"].state == "rolling")

    pipeline.abort(run_id)
    run = pipeline.wait(run_id, timeout=20)

    assert run.status is RunStatus.FAILED
    assert run.message == "aborted"
    assert run.plan_for("internal").status is PlanStatus.ROLLED_BACK
    assert run.plan_for("edge").status is PlanStatus.PENDING
    assert _artifacts(tiers["internal"]) == {"v1"}
    assert len(tiers["internal"].serving()) == 2


def test_unknown_tier_and_empty_release(tiers):
    pipeline = _pipeline(tiers)
    with pytest.raises(ValueError):
        pipeline.submit_release({"billing": "v2"})
    with pytest.raises(ValueError):
        pipeline.submit_release({})
    assert pipeline.active_run() is None


def test_overrides_apply_per_tier(tiers):
    pipeline = _pipeline(tiers)
    run_id = pipeline.submit_release(
        {"internal": "v2", "edge": "v2"},
        overrides={"edge": {"batch_size": 2, "max_unavailable": None}},
    )
    run = pipeline.wait(run_id, timeout=20)
    edge = run.plan_for("edge")
    assert (edge.batch_size, edge.max_unavailable) == (2, 1)
    assert run.plan_for("internal").batch_size == 1


def test_status_survives_restart(tiers):
    pipeline = _pipeline(tiers)
    run_id = pipeline.submit_release({"edge": "v2"})
    pipeline.wait(run_id, timeout=20)

    fresh = _pipeline(tiers)
    status = fresh.status(run_id)
    assert status["status"] == "succeeded"
    assert [p["tier"] for p in status["plans"]] == ["edge"]
    with pytest.raises(UnknownEntity):
        fresh.status("nope")
    with pytest.raises(UnknownEntity):
        fresh.abort("nope")


def test_missing_controller_rejected(tiers):
    with pytest.raises(ValueError):
        PipelineController(
            {"edge": tiers["edge"]},
            order=TIERS,
            batch_size=1,
            max_unavailable=1,
            step_retries=0,
            step_backoff_s=0,
        )
