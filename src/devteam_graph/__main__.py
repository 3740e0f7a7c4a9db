"""Entry point for `python -m devteam_graph` and the `devteam` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from pathlib import Path

from devteam_graph import DevTeamOrchestrator
from devteam_graph.errors import BudgetExceededError, DevTeamError
from devteam_graph.graph import RunResult
from devteam_graph.models import RunStatus
from devteam_graph.orchestrator import new_run_id
from devteam_graph.settings import RuntimeSettings
from devteam_graph.usage import format_usage

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SUSPENDED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the dev-team graph: PM, architect, planner, workspace")
    parser.add_argument("--requirement", default=None, help="Project requirement text (required for a new run)")
    parser.add_argument("--run-id", default=None, help="Run to create or resume (default: a fresh id)")
    parser.add_argument("--answers", default=None, help="Answers to the PM's open questions when resuming")
    parser.add_argument("--budget", type=float, default=None, help="Cost ceiling in USD; raises or lowers it when resuming a run")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def print_result(result: RunResult) -> None:
    state = result.state
    print(f"run_id={result.run_id}")
    print(f"status={result.status.value}")

    if result.status == RunStatus.SUSPENDED:
        print("The PM needs clarification. Resume with --run-id and --answers:")
        for index, question in enumerate(state.get("pm_questions") or [], start=1):
            print(f"  {index}. {question}")
        return

    spec = state.get("clarified_spec") or {}
    if spec:
        print(f"app={spec.get('app_name', '?')}")
    validation = state.get("blueprint_validation") or {}
    print(
        f"blueprint_valid={bool(validation.get('passed'))} "
        f"cycles={validation.get('validation_cycles', 0)} forced={bool(validation.get('forced'))}"
    )
    for issue in validation.get("issues") or []:
        print(f"  {issue.get('severity')}: {issue.get('message')}")
    phases = (state.get("task_queue") or {}).get("phases") or []
    print(f"plan_phases={len(phases)}")
    if state.get("workspace_id"):
        print(f"workspace={state['workspace_id']} healthy={bool(state.get('workspace_healthy'))}")
    if state.get("error"):
        print(f"error={state['error']}")
    print("usage:")
    print(format_usage(state.get("token_usage") or {}, budget=state.get("token_budget")))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        if args.budget is not None:
            settings = dataclasses.replace(settings, token_budget=args.budget).normalized()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return EXIT_FAILURE

    run_id = args.run_id or new_run_id()
    try:
        orchestrator = DevTeamOrchestrator(settings, repo_root=Path.cwd())
        result = orchestrator.run(args.requirement, run_id=run_id, answers=args.answers, budget=args.budget)
    except BudgetExceededError as exc:
        logging.error("Run %s stopped: %s", run_id, exc)
        print(f"run_id={run_id}")
        print(f"budget_exceeded cost=${exc.cumulative_cost:.4f} budget=${exc.budget:.2f}")
        return EXIT_FAILURE
    except (DevTeamError, RuntimeError, ValueError) as exc:
        logging.error("Run %s failed: %s", run_id, exc)
        return EXIT_FAILURE

    print_result(result)
    if result.status == RunStatus.SUSPENDED:
        return EXIT_SUSPENDED
    if result.status != RunStatus.COMPLETED or result.state.get("error"):
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
