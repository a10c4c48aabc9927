"""Task archive routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from ...archive import ArchiveSweeper
from ..deps import get_archiver
from ..schemas import envelope, row

router = APIRouter(tags=["archives"])


@router.get("/archives")
async def list_archived(
    board_id: Optional[int] = Query(None),
    page: int = Query(1),
    limit: int = Query(50),
    archiver: ArchiveSweeper = Depends(get_archiver),
):
    tasks, meta = await archiver.list_archived(board_id=board_id, page=page, limit=limit)
    return envelope([row(t) for t in tasks], meta=meta)


@router.post("/archives/sweep")
async def run_archive_sweep(archiver: ArchiveSweeper = Depends(get_archiver)):
    archived = await archiver.sweep()
    return envelope({"archived_count": archived})


@router.post("/tasks/{task_id}/archive")
async def archive_task(task_id: int, archiver: ArchiveSweeper = Depends(get_archiver)):
    task = await archiver.schedule_immediate_archive(task_id)
    return envelope(row(task), message="Task archived")


@router.post("/tasks/{task_id}/unarchive")
async def unarchive_task(task_id: int, archiver: ArchiveSweeper = Depends(get_archiver)):
    task = await archiver.unarchive(task_id)
    return envelope(row(task), message="Task unarchived")


@router.delete("/archives/{task_id}", status_code=204)
async def delete_archived(task_id: int, archiver: ArchiveSweeper = Depends(get_archiver)):
    await archiver.delete_archived(task_id)
    return Response(status_code=204)
