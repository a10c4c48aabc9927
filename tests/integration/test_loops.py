"""Loop steps iterating over stories, with and without per-story verification."""

import asyncio
import json

import pytest

from colony.db import Story
from colony.errors import PreconditionError

from conftest import set_fields, single_step


def _stories(*ids):
    return "STORIES_JSON: " + json.dumps(
        [
            {
                "id": story_id,
                "title": f"Title {story_id}",
                "description": f"Do {story_id}",
                "acceptanceCriteria": [f"{story_id} passes"],
            }
            for story_id in ids
        ]
    )


def _loop(verify_step=None):
    config = {"over": "stories", "completion": "all_done"}
    if verify_step:
        config.update(verify_each=True, verify_step=verify_step)
    return {
        **single_step(
            "implement", "dev", "Implement:\n{{current_story}}\nDone:\n{{completed_stories}}"
        ),
        "kind": "loop",
        "loop_config": config,
    }


async def _start(orchestrator, steps):
    workflow = await orchestrator.catalog.create_workflow("loop-flow", steps=steps)
    run = await orchestrator.create_run(workflow.id, task="feature")
    return run, {s.step_id: s for s in await orchestrator.list_steps(run.id)}


async def _statuses(orchestrator, run_id):
    steps = {s.step_id: s.status for s in await orchestrator.list_steps(run_id)}
    stories = {s.story_id: s.status for s in await orchestrator.list_stories(run_id)}
    return steps, stories


@pytest.mark.asyncio
async def test_loop_without_verification(orchestrator):
    run, steps = await _start(
        orchestrator,
        [single_step("plan", "planner"), _loop(), single_step("release", "ops")],
    )

    claim = await orchestrator.claims.claim_next("planner")
    result = await orchestrator.complete_step(run.id, claim.step_id, "PLAN: ready\n" + _stories("S-1", "S-2"))
    assert result.stories_created == 2

    first = await orchestrator.claims.claim_next("dev")
    assert first.story_key == "S-1"
    assert "Story S-1: Title S-1" in first.resolved_input
    assert "(none yet)" in first.resolved_input
    await orchestrator.complete_step(run.id, first.step_id, "STATUS: done")

    step_states, story_states = await _statuses(orchestrator, run.id)
    assert step_states["implement"] == "pending"
    assert story_states == {"S-1": "completed", "S-2": "pending"}

    second = await orchestrator.claims.claim_next("dev")
    assert second.story_key == "S-2"
    assert "- S-1: Title S-1" in second.resolved_input
    result = await orchestrator.complete_step(run.id, second.step_id, "STATUS: done")

    assert result.run_completed is False
    step_states, _ = await _statuses(orchestrator, run.id)
    assert step_states == {"plan": "completed", "implement": "completed", "release": "pending"}

    final = await orchestrator.claims.claim_next("ops")
    result = await orchestrator.complete_step(run.id, final.step_id, "SHIPPED: yes")
    assert result.run_completed is True
    assert (await orchestrator.get_run(run.id)).status == "completed"


@pytest.mark.asyncio
async def test_loop_with_verify_each(orchestrator):
    run, steps = await _start(
        orchestrator,
        [
            single_step("plan", "planner"),
            _loop(verify_step="verify"),
            single_step("verify", "qa", "Check {{current_story_id}}"),
            single_step("release", "ops"),
        ],
    )
    claim = await orchestrator.claims.claim_next("planner")
    await orchestrator.complete_step(run.id, claim.step_id, _stories("S-1", "S-2"))

    for story_key in ("S-1", "S-2"):
        work = await orchestrator.claims.claim_next("dev")
        assert work.story_key == story_key
        result = await orchestrator.complete_step(run.id, work.step_id, "STATUS: built")
        assert result.needs_verify is True
        assert result.verify_step_id == steps["verify"].id

        step_states, story_states = await _statuses(orchestrator, run.id)
        assert story_states[story_key] == "verifying"
        assert step_states["implement"] == "waiting"
        assert step_states["verify"] == "pending"
        assert await orchestrator.claims.claim_next("dev") is None

        check = await orchestrator.claims.claim_next("qa")
        assert check.step_id == steps["verify"].id
        assert check.resolved_input == f"Check {story_key}"
        await orchestrator.complete_step(run.id, check.step_id, "VERIFIED: yes")

        _, story_states = await _statuses(orchestrator, run.id)
        assert story_states[story_key] == "completed"

    step_states, _ = await _statuses(orchestrator, run.id)
    assert step_states == {
        "plan": "completed",
        "implement": "completed",
        "verify": "completed",
        "release": "pending",
    }

    final = await orchestrator.claims.claim_next("ops")
    result = await orchestrator.complete_step(run.id, final.step_id, "DONE: yes")
    assert result.run_completed is True


@pytest.mark.asyncio
async def test_failed_verification_returns_story_for_retry(orchestrator):
    run, steps = await _start(
        orchestrator,
        [_loop(verify_step="verify"), single_step("verify", "qa")],
    )
    await orchestrator.create_story(run.id, "S-1", "Only", step_id=steps["implement"].id)

    work = await orchestrator.claims.claim_next("dev")
    await orchestrator.complete_step(run.id, work.step_id, "STATUS: built")
    check = await orchestrator.claims.claim_next("qa")

    result = await orchestrator.fail_step(run.id, check.step_id, "acceptance criteria not met")

    assert result.will_retry is True
    assert result.status == "waiting"
    step_states, story_states = await _statuses(orchestrator, run.id)
    assert story_states == {"S-1": "failed"}
    assert step_states == {"implement": "pending", "verify": "waiting"}
    assert (await orchestrator.get_run(run.id)).status == "running"


@pytest.mark.asyncio
async def test_story_failure_exhausted_fails_loop_and_run(orchestrator, db):
    run, steps = await _start(orchestrator, [_loop()])
    story = await orchestrator.create_story(run.id, "S-1", "Only", step_id=steps["implement"].id)
    await set_fields(db, Story, story.id, retry_count=3)

    work = await orchestrator.claims.claim_next("dev")
    result = await orchestrator.fail_step(run.id, work.step_id, "cannot build")

    assert result.will_retry is False
    step_states, story_states = await _statuses(orchestrator, run.id)
    assert story_states == {"S-1": "failed"}
    assert step_states == {"implement": "failed"}
    assert (await orchestrator.get_run(run.id)).status == "failed"


@pytest.mark.asyncio
async def test_loop_step_can_add_stories_while_iterating(orchestrator):
    run, steps = await _start(orchestrator, [_loop()])
    await orchestrator.create_story(run.id, "S-1", "Seed", step_id=steps["implement"].id)

    work = await orchestrator.claims.claim_next("dev")
    result = await orchestrator.complete_step(run.id, work.step_id, "STATUS: done\n" + _stories("S-1", "S-2"))

    assert result.stories_created == 1
    assert result.run_completed is False
    work = await orchestrator.claims.claim_next("dev")
    assert work.story_key == "S-2"
    result = await orchestrator.complete_step(run.id, work.step_id, "STATUS: done")
    assert result.run_completed is True


@pytest.mark.asyncio
async def test_story_routes_complete_and_fail(orchestrator):
    run, steps = await _start(orchestrator, [_loop()])
    first = await orchestrator.create_story(run.id, "S-1", "One", step_id=steps["implement"].id)
    second = await orchestrator.create_story(run.id, "S-2", "Two", step_id=steps["implement"].id)

    await orchestrator.start_story(run.id, first.id)
    failure = await orchestrator.fail_story(run.id, first.id, "flaky")
    assert failure.will_retry is True

    await orchestrator.start_story(run.id, second.id)
    result = await orchestrator.complete_story(run.id, second.id, "STATUS: done")
    assert result.run_completed is False

    step_states, story_states = await _statuses(orchestrator, run.id)
    assert story_states == {"S-1": "failed", "S-2": "completed"}
    assert step_states == {"implement": "pending"}


@pytest.mark.asyncio
async def test_concurrent_story_completions_keep_both_outputs(orchestrator):
    run, steps = await _start(orchestrator, [_loop()])
    loop_id = steps["implement"].id
    first = await orchestrator.create_story(run.id, "S-1", "First", step_id=loop_id)
    second = await orchestrator.create_story(run.id, "S-2", "Second", step_id=loop_id)
    await orchestrator.create_story(run.id, "S-3", "Third", step_id=loop_id)
    await orchestrator.start_story(run.id, first.id)
    await orchestrator.start_story(run.id, second.id)

    results = await asyncio.gather(
        orchestrator.complete_story(run.id, first.id, "ALPHA: 1"),
        orchestrator.complete_story(run.id, second.id, "BETA: 2"),
    )

    assert all(r.completed for r in results)
    run = await orchestrator.get_run(run.id)
    assert run.context["alpha"] == "1"
    assert run.context["beta"] == "2"
    step_states, story_states = await _statuses(orchestrator, run.id)
    assert story_states == {"S-1": "completed", "S-2": "completed", "S-3": "pending"}
    assert step_states["implement"] == "pending"


@pytest.mark.asyncio
async def test_story_patch_moves_the_loop_along(orchestrator):
    run, steps = await _start(orchestrator, [_loop(), single_step("release", "ops")])
    story = await orchestrator.create_story(run.id, "S-1", "Only", step_id=steps["implement"].id)
    await orchestrator.claims.claim_next("dev")

    patched = await orchestrator.update_story(run.id, story.id, status="completed", output="STATUS: done")

    assert patched.status == "completed"
    step_states, _ = await _statuses(orchestrator, run.id)
    assert step_states == {"implement": "completed", "release": "pending"}
    assert (await orchestrator.get_run(run.id)).context["status"] == "done"
    with pytest.raises(PreconditionError, match="from completed to pending"):
        await orchestrator.update_story(run.id, story.id, status="pending")


@pytest.mark.asyncio
async def test_story_patch_failure_goes_through_the_pipeline(orchestrator, db):
    run, steps = await _start(orchestrator, [_loop()])
    story = await orchestrator.create_story(run.id, "S-1", "Only", step_id=steps["implement"].id)
    await set_fields(db, Story, story.id, retry_count=3)
    await orchestrator.claims.claim_next("dev")

    patched = await orchestrator.update_story(run.id, story.id, status="failed", output="broken")

    assert patched.status == "failed"
    step_states, _ = await _statuses(orchestrator, run.id)
    assert step_states == {"implement": "failed"}
    assert (await orchestrator.get_run(run.id)).status == "failed"
