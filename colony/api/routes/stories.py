"""Story routes nested under a run."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...contracts import DEFAULT_MAX_RETRIES
from ...runs import RunOrchestrator
from ..deps import get_orchestrator
from ..schemas import CompleteRequest, FailRequest, StoryCreate, StoryPatch, envelope, row

router = APIRouter(prefix="/runs/{run_id}/stories", tags=["stories"])


@router.get("")
async def list_stories(
    run_id: str,
    step_id: Optional[str] = Query(None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    stories = await orchestrator.list_stories(run_id, step_id=step_id)
    return envelope([row(s) for s in stories])


@router.post("", status_code=201)
async def create_story(
    run_id: str, body: StoryCreate, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    story = await orchestrator.create_story(
        run_id,
        story_id=body.story_id,
        title=body.title,
        step_id=body.step_id,
        description=body.description,
        acceptance_criteria=body.acceptance_criteria,
        story_index=body.story_index,
        max_retries=body.max_retries if body.max_retries is not None else DEFAULT_MAX_RETRIES,
    )
    return envelope(row(story))


@router.get("/{story_id}")
async def get_story(
    run_id: str, story_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    story = await orchestrator.get_story(run_id, story_id)
    return envelope(row(story))


@router.post("/{story_id}/start")
async def start_story(
    run_id: str, story_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    story = await orchestrator.start_story(run_id, story_id)
    return envelope(row(story), message="Story started")


@router.post("/{story_id}/complete")
async def complete_story(
    run_id: str,
    story_id: str,
    body: CompleteRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.complete_story(run_id, story_id, body.output)
    story = await orchestrator.get_story(run_id, story_id)
    return envelope(row(story), **result.model_dump())


@router.post("/{story_id}/fail")
async def fail_story(
    run_id: str,
    story_id: str,
    body: FailRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.fail_story(run_id, story_id, body.error, body.output)
    story = await orchestrator.get_story(run_id, story_id)
    return envelope(row(story), **result.model_dump())


@router.post("/{story_id}/retry")
async def increment_story_retry(
    run_id: str, story_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.get_story(run_id, story_id)
    story = await orchestrator.pipeline.increment_story_retry(story_id)
    return envelope(row(story))


@router.patch("/{story_id}")
async def update_story(
    run_id: str,
    story_id: str,
    body: StoryPatch,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    story = await orchestrator.update_story(run_id, story_id, **body.model_dump(exclude_unset=True))
    return envelope(row(story))
