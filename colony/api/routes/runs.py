"""Run routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...errors import InvalidInputError
from ...runs import RunOrchestrator
from ..deps import get_orchestrator
from ..schemas import RunCreate, StatusUpdate, envelope, row

router = APIRouter(prefix="/runs", tags=["runs"])


@router.get("")
async def list_runs(
    status: Optional[str] = Query(None),
    task_id: Optional[str] = Query(None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    runs = await orchestrator.list_runs(status=status, task_id=task_id)
    return envelope([row(run) for run in runs])


@router.post("", status_code=201)
async def create_run(body: RunCreate, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    if not body.workflow_id:
        raise InvalidInputError("workflow_id is required")
    run = await orchestrator.create_run(
        body.workflow_id,
        task_id=body.task_id,
        task=body.task,
        context=body.seed_context if body.seed_context is not None else body.context,
    )
    return envelope(row(run))


@router.get("/{run_id}")
async def get_run(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    """Run with its steps and stories."""
    run = await orchestrator.get_run(run_id)
    steps = await orchestrator.list_steps(run_id)
    stories = await orchestrator.list_stories(run_id)
    return envelope(
        row(run, steps=[row(s) for s in steps], stories=[row(s) for s in stories])
    )


@router.patch("/{run_id}/status")
async def update_run_status(
    run_id: str, body: StatusUpdate, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    if not body.status:
        raise InvalidInputError("status is required")
    run = await orchestrator.update_run_status(run_id, body.status)
    return envelope(row(run))
