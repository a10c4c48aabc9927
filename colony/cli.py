"""Command line interface for the Colony workflow engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .archive import ArchiveSweeper
from .config import ColonyConfig, load_config
from .db import Database, get_database
from .errors import ColonyError
from .runs import RunOrchestrator
from .scheduler import SchedulerSweeper

T = TypeVar("T")

app = typer.Typer(help="CLI for Colony workflows")

workflow_app = typer.Typer(help="Commands for managing workflow templates")
run_app = typer.Typer(help="Commands for inspecting runs")
archive_app = typer.Typer(help="Commands for task archival")

app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")
app.add_typer(archive_app, name="archive")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """Colony CLI entry point."""
    ctx.obj = load_config(str(config) if config else None)


def _execute(ctx: typer.Context, work: Callable[[Database], Awaitable[T]]) -> T:
    """Run ``work`` against a freshly initialised database."""
    config: ColonyConfig = ctx.obj or load_config()

    async def _runner() -> T:
        db = get_database(config=config)
        await db.init_db()
        try:
            return await work(db)
        finally:
            await db.dispose()

    try:
        return asyncio.run(_runner())
    except ColonyError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    background: bool = typer.Option(True, help="Run the maintenance sweeps"),
) -> None:
    """Start the HTTP API together with the scheduler and archive sweeps."""
    import uvicorn

    from .api import create_app

    config: ColonyConfig = ctx.obj or load_config()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    application = create_app(config=config, background=background)
    uvicorn.run(
        application,
        host=host or config.api.host,
        port=port or config.api.port,
    )


@app.command("sweep")
def sweep(ctx: typer.Context) -> None:
    """
    Run every workflow maintenance sweep once.

    Reclaims abandoned steps and stories, requeues failures whose cooldown has
    passed and fails runs that stopped making progress.

    Example:
        colony sweep
        # Output: abandoned_steps: 1
        #         ...
    """
    config: ColonyConfig = ctx.obj or load_config()

    async def _work(db: Database):
        return await SchedulerSweeper(db, config.scheduler).run_all_scheduled()

    report = _execute(ctx, _work)
    for name, count in report.model_dump().items():
        typer.echo(f"{name}: {count}")


@archive_app.command("sweep")
def archive_sweep(
    ctx: typer.Context,
    delay_hours: Optional[float] = typer.Option(
        None, help="Archive tasks completed longer ago than this"
    ),
) -> None:
    """Archive completed tasks older than the configured delay."""
    config: ColonyConfig = ctx.obj or load_config()

    async def _work(db: Database) -> int:
        return await ArchiveSweeper(db, config.archive).sweep(delay_hours)

    archived = _execute(ctx, _work)
    typer.echo(f"Archived {archived} tasks")


@workflow_app.command("import")
def workflow_import(ctx: typer.Context, path: Path) -> None:
    """
    Create a workflow template from a YAML file.

    Example:
        colony workflow import workflows/feature-dev.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    text = path.read_text()

    async def _work(db: Database):
        return await RunOrchestrator(db).catalog.import_yaml(text)

    workflow = _execute(ctx, _work)
    typer.echo(f"Imported workflow {workflow.name} ({workflow.id}) with {len(workflow.steps)} steps")


@workflow_app.command("list")
def workflow_list(ctx: typer.Context) -> None:
    """List workflow templates."""

    async def _work(db: Database):
        return await RunOrchestrator(db).catalog.list_workflows()

    workflows = _execute(ctx, _work)
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{len(wf.steps)} steps")


@run_app.command("create")
def run_create(
    ctx: typer.Context,
    workflow: str = typer.Argument(..., help="Workflow id or name"),
    task: Optional[str] = typer.Option(None, help="Task description"),
    task_id: Optional[str] = typer.Option(None, help="External task identifier"),
    context: Optional[str] = typer.Option(None, help="Seed context as a JSON object"),
) -> None:
    """Start a run of a workflow."""
    seed: dict[str, Any] = json.loads(context) if context else {}

    async def _work(db: Database):
        orchestrator = RunOrchestrator(db)
        definition = await orchestrator.catalog.get_workflow(workflow)
        if definition is None:
            definition = await orchestrator.catalog.get_workflow_by_name(workflow)
        workflow_id = definition.id if definition is not None else workflow
        return await orchestrator.create_run(
            workflow_id, task_id=task_id, task=task, context=seed
        )

    run = _execute(ctx, _work)
    typer.echo(f"{run.id}\t{run.status}")


@run_app.command("list")
def run_list(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, help="Only runs with this status"),
) -> None:
    """
    List runs with their current status.

    Example:
        colony run list --status running
        # Output: 4f0c...    running    T-42
    """

    async def _work(db: Database):
        return await RunOrchestrator(db).list_runs(status=status)

    runs = _execute(ctx, _work)
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.status}\t{run.task_id or '-'}")


@run_app.command("show")
def run_show(ctx: typer.Context, run_id: str) -> None:
    """Show a run's context and the state of each step."""

    async def _work(db: Database):
        orchestrator = RunOrchestrator(db)
        run = await orchestrator.get_run(run_id)
        return run, await orchestrator.list_steps(run_id), await orchestrator.list_stories(run_id)

    run, steps, stories = _execute(ctx, _work)
    typer.echo(f"Run {run.id}: {run.status}")
    typer.echo(f"Context: {json.dumps(run.context)}")
    for step in steps:
        line = f"- [{step.step_index}] {step.step_id} ({step.kind}): {step.status}"
        if step.retry_count:
            line += f" retries {step.retry_count}/{step.max_retries}"
        typer.echo(line)
        for story in (s for s in stories if s.step_id == step.id):
            typer.echo(f"    * {story.story_id} {story.title}: {story.status}")


if __name__ == "__main__":
    app()
