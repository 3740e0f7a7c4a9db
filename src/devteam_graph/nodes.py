"""Deterministic nodes and routers: human input and workspace setup/health."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from langgraph.graph import END

from .models import FileEntry
from .stages import Stage
from .workspace import Workspace

logger = logging.getLogger(__name__)


def human_input(state: Mapping[str, Any]) -> dict[str, Any]:
    """Fold the answers supplied on resume into the PM conversation.

    The run suspends before this node; the caller resumes it with ``human_answers``.
    """
    answers = str(state.get("human_answers") or "").strip()
    questions = state.get("pm_questions") or []
    if not questions:
        logger.info("[human_input] no open questions; moving on")
        return {}
    if not answers:
        logger.warning("[human_input] resumed without answers to %d question(s)", len(questions))
    else:
        logger.info("[human_input] received answers to %d question(s)", len(questions))
    return {
        "pm_conversation": {"role": "user", "answers": answers},
        "pm_status": "idle",
        "human_answers": "",
    }


def route_after_pm(state: Mapping[str, Any]) -> str:
    status = state.get("pm_status")
    if status == "needs_clarification":
        return Stage.HUMAN_INPUT.value
    if status == "spec_ready":
        return Stage.ARCHITECT_ENTITIES.value
    return END


class WorkspaceNodes:
    """Workspace setup and health-check nodes bound to one :class:`Workspace`."""

    def __init__(self, workspace: Workspace, *, max_setup_attempts: int = 2) -> None:
        self.workspace = workspace
        self.max_setup_attempts = max_setup_attempts

    def setup_workspace(self, state: Mapping[str, Any]) -> dict[str, Any]:
        blueprint = state.get("blueprint") or {}
        attempts = int(state.get("workspace_setup_attempts", 0)) + 1
        logger.info("[setup_workspace] creating workspace (attempt %d/%d)", attempts, self.max_setup_attempts)
        try:
            workspace_id = self.workspace.create(
                blueprint.get("folder_structure") or "",
                blueprint.get("dependencies") or {},
            )
        except (OSError, ValueError) as exc:
            logger.error("[setup_workspace] creation failed: %s", exc)
            return {
                "workspace_id": "",
                "workspace_healthy": False,
                "workspace_failures": [f"Workspace creation failed: {exc}"],
                "workspace_setup_attempts": attempts,
            }

        entries = [
            FileEntry(path=path, purpose="scaffold")
            for path in self.workspace.list_files(workspace_id)
        ]
        logger.info("[setup_workspace] workspace %s created with %d scaffold file(s)", workspace_id, len(entries))
        return {
            "workspace_id": workspace_id,
            "workspace_setup_attempts": attempts,
            "file_registry": entries,
            "current_phase": "workspace",
        }

    def workspace_health_check(self, state: Mapping[str, Any]) -> dict[str, Any]:
        workspace_id = state.get("workspace_id") or ""
        attempts = int(state.get("workspace_setup_attempts", 0))
        if not workspace_id:
            failures = list(state.get("workspace_failures") or []) or ["No workspace id; setup may have failed"]
        else:
            report = self.workspace.health_check(workspace_id)
            if report.healthy:
                logger.info("[workspace_health_check] all checks passed for %s", report.path)
                return {"workspace_healthy": True, "workspace_failures": [], "current_phase": "complete"}
            failures = report.failures

        for failure in failures:
            logger.warning("[workspace_health_check] %s", failure)
        update: dict[str, Any] = {"workspace_healthy": False, "workspace_failures": failures}
        if attempts >= self.max_setup_attempts:
            update["error"] = f"Workspace unhealthy after {attempts} attempt(s): {'; '.join(failures)}"
        return update

    def route_after_health_check(self, state: Mapping[str, Any]) -> str:
        if state.get("workspace_healthy"):
            return END
        if int(state.get("workspace_setup_attempts", 0)) < self.max_setup_attempts:
            logger.info("Workspace unhealthy; retrying setup")
            return Stage.SETUP_WORKSPACE.value
        logger.error("Workspace unhealthy after %d attempt(s); ending run", self.max_setup_attempts)
        return END
