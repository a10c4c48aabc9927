"""Maintenance sweeps: abandonment, retry requeue and run timeouts."""

import asyncio

import pytest

from colony.config import SchedulerConfig
from colony.db import Run, Step, Story
from colony.errors import PreconditionError
from colony.scheduler import PeriodicSweep, SchedulerSweeper

from conftest import backdate, set_fields, single_step


async def _start(orchestrator, *steps):
    workflow = await orchestrator.catalog.create_workflow("maintained", steps=list(steps))
    run = await orchestrator.create_run(workflow.id, task="keep going")
    return run, await orchestrator.list_steps(run.id)


def _loop(step_id="implement"):
    return {**single_step(step_id, "dev", "{{current_story}}"), "kind": "loop"}


@pytest.fixture
def sweeper(db):
    return SchedulerSweeper(db, SchedulerConfig(interval_seconds=0.01))


@pytest.mark.asyncio
async def test_abandoned_step_returns_to_pending(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, single_step("a", "alpha"))
    await orchestrator.claims.claim_next("alpha")

    assert await sweeper.reclaim_abandoned_steps() == 0
    await backdate(db, Step, steps[0].id, minutes=20)

    assert await sweeper.reclaim_abandoned_steps() == 1
    assert await sweeper.reclaim_abandoned_steps() == 0
    step = await orchestrator.get_step(run.id, steps[0].id)
    assert step.status == "pending"
    assert step.claimed_by is None
    assert step.output == "RESET: Step abandoned (stuck >15 min)"

    claim = await orchestrator.claims.claim_next("alpha")
    assert claim.step_id == steps[0].id


@pytest.mark.asyncio
async def test_late_failure_after_reclaim_leaves_run_alone(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, single_step("a", "alpha"))
    await set_fields(db, Step, steps[0].id, retry_count=3)
    claim = await orchestrator.claims.claim_next("alpha")
    await backdate(db, Step, steps[0].id, minutes=20)
    assert await sweeper.reclaim_abandoned_steps() == 1

    with pytest.raises(PreconditionError) as excinfo:
        await orchestrator.pipeline.fail_step(claim.step_id, "too late")

    assert excinfo.value.current_status == "pending"
    assert (await orchestrator.get_step(run.id, steps[0].id)).status == "pending"
    assert (await orchestrator.get_run(run.id)).status == "running"


@pytest.mark.asyncio
async def test_failure_racing_reclaim_never_strands_run(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, single_step("a", "alpha"))
    await set_fields(db, Step, steps[0].id, retry_count=3)
    claim = await orchestrator.claims.claim_next("alpha")
    await backdate(db, Step, steps[0].id, minutes=20)

    failed, reclaimed = await asyncio.gather(
        orchestrator.pipeline.fail_step(claim.step_id, "exhausted"),
        sweeper.reclaim_abandoned_steps(),
        return_exceptions=True,
    )

    step = await orchestrator.get_step(run.id, steps[0].id)
    run = await orchestrator.get_run(run.id)
    if isinstance(failed, Exception):
        assert isinstance(failed, PreconditionError)
        assert reclaimed == 1
        assert (step.status, run.status) == ("pending", "running")
    else:
        assert failed.run_failed is True
        assert reclaimed == 0
        assert (step.status, run.status) == ("failed", "failed")


@pytest.mark.asyncio
async def test_custom_abandonment_age(orchestrator, sweeper, db):
    _, steps = await _start(orchestrator, single_step("a", "alpha"))
    await orchestrator.claims.claim_next("alpha")
    await backdate(db, Step, steps[0].id, minutes=3)

    assert await sweeper.reclaim_abandoned_steps() == 0
    assert await sweeper.reclaim_abandoned_steps(max_age_minutes=2) == 1
    step = await orchestrator.get_step(steps[0].run_id, steps[0].id)
    assert step.output == "RESET: Step abandoned (stuck >2 min)"


@pytest.mark.asyncio
async def test_abandoned_loop_step_releases_its_story(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, _loop())
    story = await orchestrator.create_story(run.id, "S-1", "First", step_id=steps[0].id)
    await orchestrator.claims.claim_next("dev")
    await backdate(db, Step, steps[0].id, minutes=30)

    assert await sweeper.reclaim_abandoned_steps() == 1

    step = await orchestrator.get_step(run.id, steps[0].id)
    assert step.status == "pending"
    assert step.current_story_id is None
    assert (await orchestrator.get_story(run.id, story.id)).status == "pending"


@pytest.mark.asyncio
async def test_abandoned_verify_step_keeps_its_story(orchestrator, sweeper, db):
    loop = {
        **_loop(),
        "loop_config": {"verify_each": True, "verify_step": "verify"},
    }
    run, steps = await _start(orchestrator, loop, single_step("verify", "qa"))
    story = await orchestrator.create_story(run.id, "S-1", "First", step_id=steps[0].id)
    work = await orchestrator.claims.claim_next("dev")
    await orchestrator.complete_step(run.id, work.step_id, "STATUS: built")
    await orchestrator.claims.claim_next("qa")
    await backdate(db, Step, steps[1].id, minutes=30)

    assert await sweeper.reclaim_abandoned_steps() == 1

    verify = await orchestrator.get_step(run.id, steps[1].id)
    assert verify.status == "pending"
    assert verify.current_story_id == story.id
    assert (await orchestrator.get_story(run.id, story.id)).status == "verifying"
    retry = await orchestrator.claims.claim_next("qa")
    assert retry.story_key == "S-1"


@pytest.mark.asyncio
async def test_abandoned_story_returns_to_pending(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, _loop())
    story = await orchestrator.create_story(run.id, "S-1", "First", step_id=steps[0].id)
    await orchestrator.start_story(run.id, story.id)
    await backdate(db, Story, story.id, minutes=20)

    assert await sweeper.reclaim_abandoned_stories() == 1
    assert await sweeper.reclaim_abandoned_stories() == 0

    reset = await orchestrator.get_story(run.id, story.id)
    assert reset.status == "pending"
    assert reset.output == "RESET: Story abandoned (stuck >15 min)"
    step = await orchestrator.get_step(run.id, steps[0].id)
    assert step.status == "pending"
    assert step.current_story_id is None


@pytest.mark.asyncio
async def test_failed_step_requeued_after_cooldown(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, single_step("a", "alpha"))
    claim = await orchestrator.claims.claim_next("alpha")
    await orchestrator.fail_step(run.id, claim.step_id, "flaky network")

    assert await sweeper.retry_failed_steps() == 0
    await backdate(db, Step, steps[0].id, minutes=10)

    assert await sweeper.retry_failed_steps() == 1
    assert await sweeper.retry_failed_steps() == 0
    step = await orchestrator.get_step(run.id, steps[0].id)
    assert step.status == "pending"
    assert step.retry_count == 1
    assert step.output == "RETRY: Attempt 1/3"


@pytest.mark.asyncio
async def test_exhausted_step_is_not_requeued(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, single_step("a", "alpha"))
    await set_fields(db, Step, steps[0].id, status="failed", retry_count=3)
    await backdate(db, Step, steps[0].id, minutes=10)

    assert await sweeper.retry_failed_steps() == 0
    assert (await orchestrator.get_step(run.id, steps[0].id)).status == "failed"


@pytest.mark.asyncio
async def test_failed_story_requeued_after_cooldown(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, _loop())
    story = await orchestrator.create_story(run.id, "S-1", "First", step_id=steps[0].id)
    await orchestrator.claims.claim_next("dev")
    await orchestrator.fail_step(run.id, steps[0].id, "compile error")
    await backdate(db, Story, story.id, minutes=10)

    assert await sweeper.retry_failed_stories() == 1

    story = await orchestrator.get_story(run.id, story.id)
    assert story.status == "pending"
    assert story.retry_count == 1
    assert story.output == "RETRY: Attempt 1/3"
    claim = await orchestrator.claims.claim_next("dev")
    assert claim.story_key == "S-1"


@pytest.mark.asyncio
async def test_stuck_run_times_out(orchestrator, sweeper, db):
    loop = _loop()
    run, steps = await _start(orchestrator, loop)
    story = await orchestrator.create_story(run.id, "S-1", "First", step_id=steps[0].id)
    await orchestrator.claims.claim_next("dev")
    await backdate(db, Run, run.id, minutes=90)

    assert await sweeper.timeout_stuck_runs() == 1
    assert await sweeper.timeout_stuck_runs() == 0

    assert (await orchestrator.get_run(run.id)).status == "failed"
    step = await orchestrator.get_step(run.id, steps[0].id)
    assert step.status == "failed"
    assert step.output == "RUN_TIMEOUT"
    story = await orchestrator.get_story(run.id, story.id)
    assert story.status == "failed"
    assert story.output == "RUN_TIMEOUT"


@pytest.mark.asyncio
async def test_sweeps_ignore_finished_runs(orchestrator, sweeper, db):
    run, steps = await _start(orchestrator, single_step("a", "alpha"))
    await orchestrator.claims.claim_next("alpha")
    await orchestrator.update_run_status(run.id, "cancelled")
    await backdate(db, Step, steps[0].id, minutes=60)
    await backdate(db, Run, run.id, minutes=600)

    report = await sweeper.run_all_scheduled()
    assert report.total() == 0


@pytest.mark.asyncio
async def test_run_all_scheduled_reports_counts(orchestrator, sweeper, db):
    _, steps = await _start(orchestrator, single_step("a", "alpha"))
    await orchestrator.claims.claim_next("alpha")
    await backdate(db, Step, steps[0].id, minutes=20)

    report = await sweeper.run_all_scheduled()

    assert report.abandoned_steps == 1
    assert report.timed_out_runs == 0
    assert report.total() == 1


@pytest.mark.asyncio
async def test_scheduler_start_and_stop(sweeper):
    await sweeper.start()
    assert sweeper.running
    await asyncio.sleep(0.05)
    await sweeper.stop()
    assert not sweeper.running


@pytest.mark.asyncio
async def test_disabled_scheduler_does_not_start(db):
    sweeper = SchedulerSweeper(db, SchedulerConfig(enabled=False))
    await sweeper.start()
    assert not sweeper.running


@pytest.mark.asyncio
async def test_periodic_sweep_survives_job_errors():
    calls = []

    async def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    sweep = PeriodicSweep("test sweep", job, interval_seconds=0.01)
    await sweep.start()
    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    await sweep.stop()

    assert len(calls) >= 3
    assert not sweep.running
