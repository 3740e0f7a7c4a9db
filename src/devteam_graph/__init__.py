from importlib.metadata import PackageNotFoundError, version

from .adapter import BudgetedCallAdapter, CallResult, CallSpec
from .checkpoint import CheckpointStore, MemoryCheckpointStore, SqliteCheckpointStore, build_checkpoint_store
from .errors import (
    BudgetExceededError,
    CallFailedError,
    ChannelError,
    DevTeamError,
    GraphConfigurationError,
    InvariantViolationError,
    SafetyCeilingExceededError,
    StructuredOutputError,
    UnknownFieldError,
    UnknownNodeError,
)
from .graph import END, START, CompiledWorkflow, RunResult, WorkflowGraph
from .llm import Completion, OpenAIReasoningClient, ReasoningClient
from .models import (
    CallRecord,
    Checkpoint,
    FileEntry,
    IssueSeverity,
    RunStatus,
    UsageDelta,
    UsageLedger,
    ValidationIssue,
    ValidationOutcome,
)
from .orchestrator import DevTeamOrchestrator, build_dev_team_graph, new_run_id
from .settings import RuntimeSettings
from .stages import DEV_TEAM_FIELDS, DevTeamState, Stage, build_state_store
from .state import FieldSpec, StateStore
from .usage import summarize_usage
from .validation import select_route_target, validate_blueprint, validate_state
from .workspace import LocalWorkspace, Workspace


def get_version() -> str:
    try:
        return version("devteam-graph")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "BudgetExceededError",
    "BudgetedCallAdapter",
    "CallFailedError",
    "CallRecord",
    "CallResult",
    "CallSpec",
    "ChannelError",
    "Checkpoint",
    "CheckpointStore",
    "CompiledWorkflow",
    "Completion",
    "DEV_TEAM_FIELDS",
    "DevTeamError",
    "DevTeamOrchestrator",
    "DevTeamState",
    "END",
    "FieldSpec",
    "FileEntry",
    "GraphConfigurationError",
    "InvariantViolationError",
    "IssueSeverity",
    "LocalWorkspace",
    "MemoryCheckpointStore",
    "OpenAIReasoningClient",
    "ReasoningClient",
    "RunResult",
    "RunStatus",
    "RuntimeSettings",
    "START",
    "SafetyCeilingExceededError",
    "SqliteCheckpointStore",
    "Stage",
    "StateStore",
    "StructuredOutputError",
    "UnknownFieldError",
    "UnknownNodeError",
    "UsageDelta",
    "UsageLedger",
    "ValidationIssue",
    "ValidationOutcome",
    "WorkflowGraph",
    "Workspace",
    "build_checkpoint_store",
    "build_dev_team_graph",
    "build_state_store",
    "get_version",
    "new_run_id",
    "select_route_target",
    "summarize_usage",
    "validate_blueprint",
    "validate_state",
]
