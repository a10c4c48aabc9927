"""Step routes nested under a run."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from ...errors import InvalidInputError
from ...runs import RunOrchestrator
from ..deps import get_orchestrator
from ..schemas import (
    ApproveRequest,
    ClaimRequest,
    CompleteRequest,
    FailRequest,
    RejectRequest,
    StepPatch,
    envelope,
    row,
)

router = APIRouter(prefix="/runs/{run_id}/steps", tags=["steps"])


@router.get("")
async def list_steps(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    steps = await orchestrator.list_steps(run_id)
    return envelope([row(s) for s in steps])


@router.get("/pending")
async def get_pending_step(run_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    step = await orchestrator.get_pending_step(run_id)
    if step is None:
        return envelope(None, message="No pending steps")
    return envelope(row(step))


@router.get("/{step_id}")
async def get_step(
    run_id: str, step_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    step = await orchestrator.get_step(run_id, step_id)
    return envelope(row(step))


@router.post("/{step_id}/claim")
async def claim_step(
    run_id: str,
    step_id: str,
    body: Optional[ClaimRequest] = None,
    x_agent_name: Optional[str] = Header(None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    agent_id = (body.agent_id if body else None) or x_agent_name
    if not agent_id:
        raise InvalidInputError("agent_id or X-Agent-Name header is required")
    claim = await orchestrator.claims.claim_step(run_id, step_id, agent_id)
    return envelope(claim.model_dump(), message="Step claimed successfully")


@router.post("/{step_id}/complete")
async def complete_step(
    run_id: str,
    step_id: str,
    body: CompleteRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.complete_step(run_id, step_id, body.output)
    step = await orchestrator.get_step(run_id, step_id)
    return envelope(row(step), **result.model_dump())


@router.post("/{step_id}/fail")
async def fail_step(
    run_id: str,
    step_id: str,
    body: FailRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.fail_step(run_id, step_id, body.error, body.output)
    step = await orchestrator.get_step(run_id, step_id)
    return envelope(row(step), **result.model_dump())


@router.post("/{step_id}/approve")
async def approve_step(
    run_id: str,
    step_id: str,
    body: Optional[ApproveRequest] = None,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.get_step(run_id, step_id)
    result = await orchestrator.pipeline.approve_step(
        step_id, note=body.note if body else None, run_id=run_id
    )
    step = await orchestrator.get_step(run_id, step_id)
    return envelope(row(step), **result.model_dump())


@router.post("/{step_id}/reject")
async def reject_step(
    run_id: str,
    step_id: str,
    body: RejectRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.get_step(run_id, step_id)
    result = await orchestrator.pipeline.reject_step(step_id, body.reason, run_id=run_id)
    step = await orchestrator.get_step(run_id, step_id)
    return envelope(row(step), **result.model_dump())


@router.post("/{step_id}/retry")
async def increment_step_retry(
    run_id: str, step_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.get_step(run_id, step_id)
    step = await orchestrator.pipeline.increment_step_retry(step_id)
    return envelope(row(step))


@router.patch("/{step_id}")
async def update_step(
    run_id: str,
    step_id: str,
    body: StepPatch,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    fields = body.model_dump(exclude_unset=True)
    step = await orchestrator.update_step(run_id, step_id, **fields)
    return envelope(row(step))
