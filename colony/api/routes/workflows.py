"""Workflow catalog routes."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from ...errors import InvalidInputError, NotFoundError
from ...runs import RunOrchestrator
from ..deps import get_orchestrator
from ..schemas import WorkflowCreate, WorkflowImport, WorkflowUpdate, envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.get("")
async def list_workflows(
    name: Optional[str] = Query(None, description="Filter by exact name"),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    workflows = await orchestrator.catalog.list_workflows(name=name)
    return envelope([w.model_dump() for w in workflows])


@router.post("", status_code=201)
async def create_workflow(
    body: WorkflowCreate, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    workflow = await orchestrator.catalog.create_workflow(
        name=body.name, description=body.description, steps=body.steps
    )
    return envelope(workflow.model_dump())


@router.post("/import", status_code=201)
async def import_workflow(
    body: WorkflowImport, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    """Create a workflow from a YAML document."""
    if not body.yaml:
        raise InvalidInputError("yaml is required")
    workflow = await orchestrator.catalog.import_yaml(body.yaml)
    return envelope(workflow.model_dump())


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    workflow = await orchestrator.catalog.get_workflow(workflow_id)
    if workflow is None:
        raise NotFoundError("Workflow")
    return envelope(workflow.model_dump())


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    body: WorkflowUpdate,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    workflow = await orchestrator.catalog.update_workflow(
        workflow_id, name=body.name, description=body.description, steps=body.steps
    )
    return envelope(workflow.model_dump())


@router.delete("/{workflow_id}", status_code=204)
async def delete_workflow(
    workflow_id: str, orchestrator: RunOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.catalog.delete_workflow(workflow_id)
    return Response(status_code=204)
