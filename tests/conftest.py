from __future__ import annotations

import copy
import json
from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from devteam_graph.llm import Completion
from devteam_graph.workspace import CommandResult, HealthReport, SnapshotResult

ScriptItem = str | dict[str, Any] | Completion | BaseException


def _as_completion(item: ScriptItem) -> Completion:
    if isinstance(item, BaseException):
        raise item
    if isinstance(item, Completion):
        return item
    if isinstance(item, dict):
        return Completion(text=json.dumps(item), input_units=1_000, output_units=500)
    return Completion(text=item)


class ScriptedClient:
    """Reasoning client replaying a fixed sequence of answers or exceptions."""

    def __init__(self, script: Sequence[ScriptItem]) -> None:
        self._script = list(script)
        self.calls: list[tuple[str, str]] = []

    def complete(self, instruction: str, context: str) -> Completion:
        self.calls.append((instruction, context))
        if not self._script:
            raise AssertionError("ScriptedClient ran out of scripted answers")
        return _as_completion(self._script.pop(0))


class RoutedClient:
    """Reasoning client answering per stage, keyed by the stage's instruction text."""

    def __init__(self, routes: Mapping[str, Sequence[ScriptItem]]) -> None:
        self._routes = {instruction: list(items) for instruction, items in routes.items()}
        self.calls: list[tuple[str, str]] = []

    def complete(self, instruction: str, context: str) -> Completion:
        self.calls.append((instruction, context))
        queue = self._routes.get(instruction)
        if not queue:
            raise AssertionError(f"No scripted answer left for instruction: {instruction[:60]!r}")
        item = queue[0] if len(queue) == 1 else queue.pop(0)
        return _as_completion(item)

    def contexts_for(self, instruction: str) -> list[str]:
        return [context for called, context in self.calls if called == instruction]


class FakeWorkspace:
    """In-memory workspace whose health reports follow a scripted sequence."""

    def __init__(self, health: Sequence[bool] = (True,)) -> None:
        self._health = list(health)
        self.created: list[tuple[str, dict[str, Any]]] = []
        self.files: dict[str, dict[str, str]] = {}

    def create(self, folder_structure: str, dependencies: Mapping[str, Any]) -> str:
        workspace_id = f"workspace-{len(self.created) + 1}"
        self.created.append((folder_structure, dict(dependencies)))
        self.files[workspace_id] = {
            "backend/package.json": "{}",
            "frontend/package.json": "{}",
        }
        return workspace_id

    def write_file(self, workspace_id: str, path: str, content: str) -> None:
        self.files[workspace_id][path] = content

    def read_file(self, workspace_id: str, path: str) -> str | None:
        return self.files[workspace_id].get(path)

    def execute(self, workspace_id: str, command: str | Sequence[str], timeout: float = 30.0) -> CommandResult:
        return CommandResult(stdout="", stderr="", exit_code=0)

    def snapshot(self, workspace_id: str, message: str) -> SnapshotResult:
        return SnapshotResult(success=True, tag="v0.1.0", message=message)

    def rollback(self, workspace_id: str, tag: str) -> SnapshotResult:
        return SnapshotResult(success=True, tag=tag)

    def health_check(self, workspace_id: str) -> HealthReport:
        healthy = self._health.pop(0) if len(self._health) > 1 else self._health[0]
        if healthy:
            return HealthReport(healthy=True, path=f"/fake/{workspace_id}")
        return HealthReport(healthy=False, failures=["Backend package.json missing"], path=f"/fake/{workspace_id}")

    def list_files(self, workspace_id: str) -> list[str]:
        return sorted(self.files[workspace_id])

    def destroy(self, workspace_id: str) -> None:
        self.files.pop(workspace_id, None)


VALID_BLUEPRINT: dict[str, Any] = {
    "entities": [
        {"name": "User", "description": "Account holder"},
        {"name": "Task", "description": "A todo item"},
        {"name": "Category", "description": "Task grouping"},
    ],
    "db_schema": {
        "database_type": "PostgreSQL",
        "tables": [
            {"name": "users", "fields": [{"name": "id", "type": "UUID"}], "foreign_keys": []},
            {
                "name": "tasks",
                "fields": [{"name": "id", "type": "UUID"}],
                "foreign_keys": [
                    {"field": "user_id", "references": "users(id)"},
                    {"field": "category_id", "references": "categories(id)"},
                ],
            },
            {"name": "categories", "fields": [{"name": "id", "type": "UUID"}], "foreign_keys": []},
            {"name": "task_tags", "fields": [{"name": "id", "type": "UUID"}], "foreign_keys": []},
        ],
    },
    "api_endpoints": [
        {"method": "POST", "path": "/api/auth/login", "requires_auth": False, "related_table": "users"},
        {"method": "GET", "path": "/api/tasks", "requires_auth": True, "related_table": "tasks"},
        {"method": "GET", "path": "/api/tasks/:id", "requires_auth": True, "related_table": "tasks"},
        {"method": "GET", "path": "/api/categories", "requires_auth": True, "related_table": "categories"},
    ],
    "frontend_pages": [
        {
            "name": "Login",
            "route": "/login",
            "requires_auth": False,
            "components": [{"name": "LoginForm", "api_calls": ["/api/auth/login"]}],
        },
        {
            "name": "Dashboard",
            "route": "/dashboard",
            "requires_auth": True,
            "components": [
                {"name": "TaskList", "api_calls": ["/api/tasks", "/api/categories"]},
                {"name": "TaskDetail", "api_calls": ["/api/tasks/:taskId"]},
            ],
        },
    ],
    "folder_structure": "backend/\n  src/\nfrontend/\n  src/",
    "dependencies": {
        "backend": {"name": "app-backend", "dependencies": {"express": "^4.18.2"}},
        "frontend": {"name": "app-frontend", "dependencies": {"react": "^18.2.0"}},
    },
}


@pytest.fixture
def valid_blueprint() -> dict[str, Any]:
    return copy.deepcopy(VALID_BLUEPRINT)
