"""Colony: multi-agent workflow runs with atomic claims and background sweeps."""

from .archive import ArchiveSweeper
from .catalog import WorkflowCatalog, parse_workflow_yaml
from .claims import ClaimEngine
from .config import ColonyConfig, load_config
from .contracts import ClaimResult, CompletionResult, FailureResult, SweepReport
from .db import Database, get_database
from .pipeline import PipelineAdvancer
from .runs import RunOrchestrator
from .scheduler import SchedulerSweeper
from .templating import merge_context_from_output, parse_structured_stories, resolve_template

__version__ = "0.1.0"
__all__ = [
    "ArchiveSweeper",
    "ClaimEngine",
    "ClaimResult",
    "ColonyConfig",
    "CompletionResult",
    "Database",
    "FailureResult",
    "PipelineAdvancer",
    "RunOrchestrator",
    "SchedulerSweeper",
    "SweepReport",
    "WorkflowCatalog",
    "get_database",
    "load_config",
    "merge_context_from_output",
    "parse_structured_stories",
    "parse_workflow_yaml",
    "resolve_template",
]
