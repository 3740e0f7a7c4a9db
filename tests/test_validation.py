from __future__ import annotations

import logging
from typing import Any

import pytest

from devteam_graph.models import IssueSeverity, ValidationIssue
from devteam_graph.stages import Stage
from devteam_graph.validation import (
    collect_issues,
    foreign_key_reference,
    make_blueprint_validator_node,
    route_after_validation,
    select_route_target,
    validate_blueprint,
    validate_state,
)


def _kinds(issues: list[ValidationIssue]) -> list[str]:
    return [issue.kind for issue in issues]


def _warning(target: str) -> ValidationIssue:
    return ValidationIssue(kind="w", severity=IssueSeverity.WARNING, route_target=target, message="w")


def test_consistent_blueprint_passes_with_no_issues(valid_blueprint: dict[str, Any]) -> None:
    outcome = validate_blueprint(valid_blueprint, 0)
    assert outcome.passed
    assert outcome.issues == []
    assert not outcome.forced
    assert outcome.next_cycle_count == 1


def test_entity_without_table_routes_to_schema_stage(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["entities"] = [{"name": "Comment"}]
    valid_blueprint["db_schema"]["tables"] = [{"name": "users"}, {"name": "tasks"}]
    valid_blueprint["api_endpoints"] = [
        {"method": "GET", "path": "/api/users", "related_table": "users"},
        {"method": "GET", "path": "/api/tasks", "related_table": "tasks"},
    ]
    valid_blueprint["frontend_pages"] = []

    outcome = validate_blueprint(valid_blueprint, 0)

    assert not outcome.passed
    assert _kinds(outcome.issues) == ["missing-structure"]
    issue = outcome.issues[0]
    assert issue.severity == IssueSeverity.ERROR
    assert issue.route_target == Stage.ARCHITECT_SCHEMA.value
    assert "Comment" in issue.message
    assert outcome.route_target == Stage.ARCHITECT_SCHEMA.value


def test_foreign_key_to_missing_table_is_invalid_reference(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["db_schema"]["tables"][1]["foreign_keys"].append({"field": "ghost_id", "references": "ghost(id)"})

    outcome = validate_blueprint(valid_blueprint, 0)

    assert _kinds(outcome.issues) == ["invalid-reference"]
    assert outcome.issues[0].route_target == Stage.ARCHITECT_SCHEMA.value
    assert outcome.route_target == Stage.ARCHITECT_SCHEMA.value


def test_endpoint_for_missing_table_is_orphan_endpoint(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["api_endpoints"].append({"method": "GET", "path": "/api/tags", "related_table": "tags"})
    outcome = validate_blueprint(valid_blueprint, 0)
    assert _kinds(outcome.issues) == ["orphan-endpoint"]
    assert outcome.route_target == Stage.ARCHITECT_API.value


def test_page_calling_unknown_endpoint_is_a_warning(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["frontend_pages"][1]["components"].append({"name": "Stats", "api_calls": ["/api/stats"]})
    outcome = validate_blueprint(valid_blueprint, 0)
    assert _kinds(outcome.issues) == ["missing-endpoint"]
    assert outcome.issues[0].severity == IssueSeverity.WARNING
    assert outcome.route_target == Stage.ARCHITECT_API.value


def test_path_parameters_match_regardless_of_name(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["frontend_pages"][1]["components"] = [
        {"name": "TaskDetail", "api_calls": ["/api/tasks/{taskId}", "/API/Tasks/:other/"]}
    ]
    valid_blueprint["frontend_pages"][1]["components"].append({"name": "More", "api_calls": ["/api/categories"]})
    assert collect_issues(valid_blueprint) == []


def test_public_page_calling_protected_endpoint_routes_to_pages(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["frontend_pages"][1]["requires_auth"] = False
    outcome = validate_blueprint(valid_blueprint, 0)
    assert set(_kinds(outcome.issues)) == {"auth-mismatch"}
    assert all(issue.route_target == Stage.ARCHITECT_PAGES.value for issue in outcome.issues)
    assert outcome.route_target == Stage.ARCHITECT_PAGES.value


def test_unreferenced_table_is_orphan_structure_but_junction_tables_are_exempt(
    valid_blueprint: dict[str, Any],
) -> None:
    valid_blueprint["db_schema"]["tables"].append({"name": "audit", "foreign_keys": []})
    outcome = validate_blueprint(valid_blueprint, 0)
    assert _kinds(outcome.issues) == ["orphan-structure"]
    assert "audit" in outcome.issues[0].message


def test_missing_artifacts_are_reported_without_crashing() -> None:
    blueprint = {"entities": [{"name": "User"}], "db_schema": {}}
    outcome = validate_blueprint(blueprint, 0)
    assert _kinds(outcome.issues) == ["missing-artifact"]
    assert outcome.route_target == Stage.ARCHITECT_SCHEMA.value

    no_pages = {
        "entities": [{"name": "User"}],
        "db_schema": {"tables": [{"name": "users"}]},
        "api_endpoints": [{"method": "GET", "path": "/api/users", "related_table": "users"}],
        "frontend_pages": None,
    }
    outcome = validate_blueprint(no_pages, 0)
    assert _kinds(outcome.issues) == ["missing-artifact"]
    assert outcome.route_target == Stage.ARCHITECT_PAGES.value


def test_malformed_entries_are_ignored() -> None:
    blueprint = {
        "entities": ["not-a-dict", {"name": "User"}],
        "db_schema": {"tables": [None, {"name": "users", "foreign_keys": "oops"}]},
        "api_endpoints": [{"path": "/api/users", "related_table": "users", "requires_auth": True}, 7],
        "frontend_pages": [
            {
                "name": "Home",
                "components": [
                    {"name": "X", "api_calls": None},
                    {"name": "Y", "api_calls": "/api/users"},
                    {"name": "Z", "api_calls": 42},
                ],
            }
        ],
    }
    assert collect_issues(blueprint) == []


def test_foreign_keys_written_as_strings_are_checked() -> None:
    blueprint = {
        "entities": [{"name": "User"}, {"name": "Task"}],
        "db_schema": {
            "tables": [
                {"name": "users", "foreign_keys": []},
                {"name": "tasks", "foreign_keys": ["users(id)", "ghost(id)", 5]},
            ]
        },
        "api_endpoints": [
            {"path": "/api/users", "related_table": "users"},
            {"path": "/api/tasks", "related_table": "tasks"},
        ],
        "frontend_pages": [],
    }
    outcome = validate_blueprint(blueprint, 0)

    assert _kinds(outcome.issues) == ["invalid-reference"]
    assert '"ghost(id)"' in outcome.issues[0].message
    assert outcome.route_target == Stage.ARCHITECT_SCHEMA.value


def test_foreign_key_reference_accepts_both_shapes() -> None:
    assert foreign_key_reference(" users(id) ") == "users(id)"
    assert foreign_key_reference({"field": "user_id", "references": "users(id)"}) == "users(id)"
    assert foreign_key_reference({"field": "user_id"}) == ""
    assert foreign_key_reference(None) == ""


def test_first_error_wins_over_warning_majority() -> None:
    issues = [
        _warning(Stage.ARCHITECT_API.value),
        _warning(Stage.ARCHITECT_API.value),
        ValidationIssue(
            kind="e", severity=IssueSeverity.ERROR, route_target=Stage.ARCHITECT_PAGES.value, message="e"
        ),
        ValidationIssue(
            kind="e", severity=IssueSeverity.ERROR, route_target=Stage.ARCHITECT_SCHEMA.value, message="e"
        ),
    ]
    assert select_route_target(issues) == Stage.ARCHITECT_PAGES.value


def test_warning_majority_and_first_encountered_tie_break() -> None:
    majority = [_warning("pages"), _warning("api"), _warning("api")]
    assert select_route_target(majority) == "api"

    tie = [_warning("pages"), _warning("api"), _warning("api"), _warning("pages")]
    assert select_route_target(tie) == "pages"
    assert select_route_target([]) is None


def test_ceiling_forces_pass_but_keeps_issues(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["db_schema"]["tables"][1]["foreign_keys"].append({"field": "g", "references": "ghost(id)"})
    outcome = validate_blueprint(valid_blueprint, 2, max_cycles=2)
    assert outcome.passed
    assert outcome.forced
    assert outcome.issues
    assert outcome.route_target is None
    assert outcome.next_cycle_count == 3


def test_validate_state_reads_cycle_count_from_state(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["entities"].append({"name": "Comment"})
    state = {"blueprint": valid_blueprint, "blueprint_validation": {"validation_cycles": 2}}
    assert validate_state(state, max_cycles=2).forced
    assert not validate_state(state, 1, max_cycles=2).passed


def test_validator_node_logs_every_accepted_issue_on_forced_pass(
    valid_blueprint: dict[str, Any], caplog: pytest.LogCaptureFixture
) -> None:
    valid_blueprint["entities"].append({"name": "Comment"})
    node = make_blueprint_validator_node(max_cycles=1)
    state = {"blueprint": valid_blueprint, "blueprint_validation": {"validation_cycles": 1}}

    with caplog.at_level(logging.WARNING, logger="devteam_graph.validation"):
        update = node(state)

    validation = update["blueprint_validation"]
    assert validation["passed"] and validation["forced"]
    assert validation["validation_cycles"] == 2
    assert update["current_phase"] == "planner"
    assert any("Comment" in record.getMessage() for record in caplog.records)
    assert route_after_validation({"blueprint_validation": {"passed": True, "issues": []}}) == Stage.PLANNER_AGENT.value


def test_validator_node_routes_back_to_responsible_stage(valid_blueprint: dict[str, Any]) -> None:
    valid_blueprint["api_endpoints"].append({"method": "GET", "path": "/api/tags", "related_table": "tags"})
    node = make_blueprint_validator_node(max_cycles=2)
    update = node({"blueprint": valid_blueprint, "blueprint_validation": {"validation_cycles": 0}})

    validation = update["blueprint_validation"]
    assert not validation["passed"]
    assert validation["validation_cycles"] == 1
    assert "current_phase" not in update
    state = {"blueprint_validation": {**validation, "issues": [issue.model_dump(mode="json") for issue in validation["issues"]]}}
    assert route_after_validation(state) == Stage.ARCHITECT_API.value
