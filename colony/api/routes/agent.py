"""Endpoints agents poll for work."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from ...errors import InvalidInputError
from ...runs import RunOrchestrator
from ...scheduler import SchedulerSweeper
from ..deps import get_orchestrator, get_scheduler
from ..schemas import AgentClaimRequest, CompleteRequest, envelope

router = APIRouter(prefix="/steps", tags=["agent"])


@router.post("/claim-by-agent")
async def claim_by_agent(
    body: Optional[AgentClaimRequest] = None,
    x_agent_name: Optional[str] = Header(None),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Claim the oldest pending step for an agent; ``data`` is null when idle."""
    agent_id = (body.agent_id if body else None) or x_agent_name
    if not agent_id:
        raise InvalidInputError("agent_id or X-Agent-Name header is required")
    claim = await orchestrator.claims.claim_next(agent_id, run_id=body.run_id if body else None)
    if claim is None:
        return envelope(None, message="No pending steps for this agent")
    return envelope(claim.model_dump(), message="Step claimed successfully")


@router.post("/{step_id}/complete-with-pipeline")
async def complete_with_pipeline(
    step_id: str,
    body: CompleteRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.pipeline.complete_step(step_id, body.output)
    message = "Step completed and run finished" if result.run_completed else "Step completed"
    return envelope(result.model_dump(), message=message)


@router.post("/cleanup-abandoned")
async def cleanup_abandoned(
    max_age_minutes: Optional[float] = Query(None, gt=0),
    scheduler: SchedulerSweeper = Depends(get_scheduler),
):
    steps = await scheduler.reclaim_abandoned_steps(max_age_minutes)
    stories = await scheduler.reclaim_abandoned_stories(max_age_minutes)
    return envelope(
        {"cleaned_count": steps, "cleaned_stories": stories},
        message=f"Cleaned up {steps} abandoned steps",
    )


@router.post("/sweep")
async def run_scheduled_sweeps(scheduler: SchedulerSweeper = Depends(get_scheduler)):
    """Run every maintenance sweep once."""
    report = await scheduler.run_all_scheduled()
    return envelope(report.model_dump(), total=report.total())
