from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from .adapter import BudgetedCallAdapter
from .agents import DevTeamAgents
from .checkpoint import CheckpointStore, build_checkpoint_store
from .graph import END, START, CompiledWorkflow, RunResult, WorkflowGraph
from .llm import OpenAIReasoningClient, ReasoningClient
from .models import RunStatus
from .nodes import WorkspaceNodes, human_input, route_after_pm
from .settings import RuntimeSettings
from .stages import Stage, build_state_store
from .validation import make_blueprint_validator_node, route_after_validation
from .workspace import LocalWorkspace, Workspace

logger = logging.getLogger(__name__)

REVISITABLE_STAGES = (Stage.ARCHITECT_SCHEMA, Stage.ARCHITECT_API, Stage.ARCHITECT_PAGES)


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def build_dev_team_graph(
    adapter: BudgetedCallAdapter,
    workspace: Workspace,
    settings: RuntimeSettings,
) -> WorkflowGraph:
    """PM -> architect chain -> cross-validation loop -> planner -> workspace setup."""
    agents = DevTeamAgents(adapter)
    workspace_nodes = WorkspaceNodes(workspace, max_setup_attempts=settings.max_workspace_setup_attempts)

    graph = WorkflowGraph(build_state_store())
    graph.add_node(Stage.PM_AGENT.value, agents.pm_agent)
    graph.add_node(Stage.HUMAN_INPUT.value, human_input)
    graph.add_node(Stage.ARCHITECT_ENTITIES.value, agents.architect_entities)
    graph.add_node(Stage.ARCHITECT_SCHEMA.value, agents.architect_schema)
    graph.add_node(Stage.ARCHITECT_API.value, agents.architect_api)
    graph.add_node(Stage.ARCHITECT_PAGES.value, agents.architect_pages)
    graph.add_node(Stage.ARCHITECT_LAYOUT.value, agents.architect_layout)
    graph.add_node(Stage.BLUEPRINT_VALIDATOR.value, make_blueprint_validator_node(settings.max_validation_cycles))
    graph.add_node(Stage.PLANNER_AGENT.value, agents.planner_agent)
    graph.add_node(Stage.SETUP_WORKSPACE.value, workspace_nodes.setup_workspace)
    graph.add_node(Stage.WORKSPACE_HEALTH_CHECK.value, workspace_nodes.workspace_health_check)

    graph.add_edge(START, Stage.PM_AGENT.value)
    graph.add_conditional_edges(
        Stage.PM_AGENT.value,
        route_after_pm,
        {
            Stage.HUMAN_INPUT.value: Stage.HUMAN_INPUT.value,
            Stage.ARCHITECT_ENTITIES.value: Stage.ARCHITECT_ENTITIES.value,
            END: END,
        },
    )
    graph.add_edge(Stage.HUMAN_INPUT.value, Stage.PM_AGENT.value)

    graph.add_edge(Stage.ARCHITECT_ENTITIES.value, Stage.ARCHITECT_SCHEMA.value)
    graph.add_edge(Stage.ARCHITECT_SCHEMA.value, Stage.ARCHITECT_API.value)
    graph.add_edge(Stage.ARCHITECT_API.value, Stage.ARCHITECT_PAGES.value)
    graph.add_edge(Stage.ARCHITECT_PAGES.value, Stage.ARCHITECT_LAYOUT.value)
    graph.add_edge(Stage.ARCHITECT_LAYOUT.value, Stage.BLUEPRINT_VALIDATOR.value)
    graph.add_conditional_edges(
        Stage.BLUEPRINT_VALIDATOR.value,
        route_after_validation,
        {
            Stage.PLANNER_AGENT.value: Stage.PLANNER_AGENT.value,
            **{stage.value: stage.value for stage in REVISITABLE_STAGES},
        },
    )

    graph.add_edge(Stage.PLANNER_AGENT.value, Stage.SETUP_WORKSPACE.value)
    graph.add_edge(Stage.SETUP_WORKSPACE.value, Stage.WORKSPACE_HEALTH_CHECK.value)
    graph.add_conditional_edges(
        Stage.WORKSPACE_HEALTH_CHECK.value,
        workspace_nodes.route_after_health_check,
        {
            Stage.SETUP_WORKSPACE.value: Stage.SETUP_WORKSPACE.value,
            END: END,
        },
    )
    return graph


class DevTeamOrchestrator:
    """Requirement in, clarified spec + validated blueprint + build plan + workspace out.

    The run suspends before ``human_input`` whenever the PM needs clarification; call
    :meth:`run` again with the same ``run_id`` and the answers to continue.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        client: ReasoningClient | None = None,
        workspace: Workspace | None = None,
        checkpointer: CheckpointStore | None = None,
        repo_root: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        repo = repo_root if repo_root is not None else Path.cwd()
        self.client = client if client is not None else OpenAIReasoningClient.from_settings(self.settings, repo_root=repo)
        self.workspace = workspace if workspace is not None else LocalWorkspace(self.settings.workspace_root_path)
        self.checkpointer = checkpointer if checkpointer is not None else build_checkpoint_store(self.settings, repo)
        self.adapter = BudgetedCallAdapter.from_settings(self.client, self.settings, sleep=sleep)
        self.graph: CompiledWorkflow = build_dev_team_graph(self.adapter, self.workspace, self.settings).compile(
            self.checkpointer,
            recursion_limit=self.settings.recursion_limit,
            interrupt_before=(Stage.HUMAN_INPUT.value,),
        )

    def run(
        self,
        requirement: str | None = None,
        *,
        run_id: str,
        answers: str | None = None,
        budget: float | None = None,
        max_steps: int | None = None,
    ) -> RunResult:
        """Start run ``run_id`` from ``requirement`` or continue it.

        ``budget`` overrides the configured ceiling. On an existing run it is written into the
        latest checkpoint first, so a run stopped by the ceiling resumes under the new one.

        Raises:
            ValueError: If the run does not exist yet and no requirement is given.
        """
        existing = self.graph.get_checkpoint(run_id)
        if existing is None:
            if not requirement or not requirement.strip():
                raise ValueError(f"Run {run_id} does not exist; a requirement is needed to start it")
            inputs = {
                "user_requirement": requirement.strip(),
                "token_budget": budget if budget is not None else self.settings.token_budget,
            }
            if answers:
                inputs["human_answers"] = answers
            return self.graph.run(inputs, run_id=run_id, max_steps=max_steps)

        if requirement:
            logger.warning("Run %s already exists; ignoring the new requirement", run_id)
        if budget is not None and existing.status != RunStatus.COMPLETED:
            logger.info("Run %s budget set to $%.2f", run_id, budget)
            self.graph.update_state(run_id, {"token_budget": budget})
        inputs = {"human_answers": answers} if answers else None
        return self.graph.run(inputs, run_id=run_id, max_steps=max_steps)

    def abort(self) -> None:
        self.graph.abort()
