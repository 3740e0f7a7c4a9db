"""Stage names and the dev-team workflow's state schema."""

from __future__ import annotations

from enum import Enum
from typing import Any, TypedDict

from .models import UsageLedger
from .state import FieldSpec, StateStore, append, merge_mapping, merge_usage, upsert_by

DEFAULT_TOKEN_BUDGET = 2.0


class Stage(str, Enum):
    PM_AGENT = "pm_agent"
    HUMAN_INPUT = "human_input"
    ARCHITECT_ENTITIES = "architect_entities"
    ARCHITECT_SCHEMA = "architect_schema"
    ARCHITECT_API = "architect_api"
    ARCHITECT_PAGES = "architect_pages"
    ARCHITECT_LAYOUT = "architect_layout"
    BLUEPRINT_VALIDATOR = "blueprint_validator"
    PLANNER_AGENT = "planner_agent"
    SETUP_WORKSPACE = "setup_workspace"
    WORKSPACE_HEALTH_CHECK = "workspace_health_check"


class DevTeamState(TypedDict, total=False):
    """Partial update record: one optional slot per declared state field."""

    user_requirement: str
    pm_status: str
    pm_questions: list[str]
    pm_conversation: list[dict[str, Any]]
    human_answers: str
    clarified_spec: dict[str, Any] | None
    blueprint: dict[str, Any]
    blueprint_validation: dict[str, Any]
    task_queue: dict[str, Any]
    file_registry: list[dict[str, Any]]
    workspace_id: str
    workspace_healthy: bool
    workspace_failures: list[str]
    workspace_setup_attempts: int
    token_usage: dict[str, Any]
    token_budget: float
    current_phase: str
    error: str | None


def empty_blueprint() -> dict[str, Any]:
    return {
        "entities": [],
        "db_schema": {},
        "api_endpoints": [],
        "frontend_pages": [],
        "folder_structure": "",
        "dependencies": {},
    }


def empty_validation() -> dict[str, Any]:
    return {
        "passed": False,
        "issues": [],
        "validation_cycles": 0,
        "route_target": None,
        "forced": False,
    }


DEV_TEAM_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("user_requirement", lambda: ""),
    FieldSpec("pm_status", lambda: "idle"),
    FieldSpec("pm_questions", list),
    FieldSpec("pm_conversation", list, append, accumulate=True),
    FieldSpec("human_answers", lambda: ""),
    FieldSpec("clarified_spec", lambda: None),
    FieldSpec("blueprint", empty_blueprint, merge_mapping, accumulate=True),
    FieldSpec("blueprint_validation", empty_validation),
    FieldSpec("task_queue", lambda: {"phases": []}),
    FieldSpec("file_registry", list, upsert_by("path"), accumulate=True),
    FieldSpec("workspace_id", lambda: ""),
    FieldSpec("workspace_healthy", lambda: False),
    FieldSpec("workspace_failures", list),
    FieldSpec("workspace_setup_attempts", lambda: 0),
    FieldSpec("token_usage", UsageLedger, merge_usage, accumulate=True),
    FieldSpec("token_budget", lambda: DEFAULT_TOKEN_BUDGET),
    FieldSpec("current_phase", lambda: "pm"),
    FieldSpec("error", lambda: None),
)


def build_state_store() -> StateStore:
    missing = set(DevTeamState.__annotations__) ^ {spec.name for spec in DEV_TEAM_FIELDS}
    if missing:
        raise ValueError(f"DevTeamState and DEV_TEAM_FIELDS disagree on: {', '.join(sorted(missing))}")
    return StateStore(DEV_TEAM_FIELDS)
