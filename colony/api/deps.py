from __future__ import annotations

from fastapi import Request

from ..archive import ArchiveSweeper
from ..runs import RunOrchestrator
from ..scheduler import SchedulerSweeper


def get_orchestrator(request: Request) -> RunOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> SchedulerSweeper:
    return request.app.state.scheduler


def get_archiver(request: Request) -> ArchiveSweeper:
    return request.app.state.archiver
