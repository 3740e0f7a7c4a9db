"""Cross-validation of the architecture blueprint.

Pure, deterministic consistency checks over the design artifacts accumulated in state. Each
issue names the upstream stage responsible for fixing it; the validator node stores the
outcome and :func:`route_after_validation` turns it into a routing decision. After
``max_cycles`` passes the run is forced forward with the unresolved issues recorded.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .models import IssueSeverity, ValidationIssue, ValidationOutcome
from .stages import Stage

logger = logging.getLogger(__name__)

MAX_VALIDATION_CYCLES = 2

SCHEMA_STAGE = Stage.ARCHITECT_SCHEMA.value
API_STAGE = Stage.ARCHITECT_API.value
PAGES_STAGE = Stage.ARCHITECT_PAGES.value

_REFERENCE_RE = re.compile(r"^\s*(\w+)\s*(?:\(|\.|$)")
_PATH_PARAM_RE = re.compile(r"/(?::\w+|\{\w+\})")


def _issue(kind: str, severity: IssueSeverity, route_target: str, message: str) -> ValidationIssue:
    return ValidationIssue(kind=kind, severity=severity, route_target=route_target, message=message)


def _list_or_none(value: Any) -> list[Any] | None:
    return value if isinstance(value, list) else None


def _dicts(values: Iterable[Any] | None) -> list[dict[str, Any]]:
    return [value for value in values or [] if isinstance(value, dict)]


def _name(entry: Mapping[str, Any], key: str = "name") -> str:
    return str(entry.get(key) or "").strip()


def foreign_key_reference(foreign_key: Any) -> str:
    """Reference text of a foreign key written as ``"table(field)"`` or ``{"references": ...}``."""
    if isinstance(foreign_key, str):
        return foreign_key.strip()
    if isinstance(foreign_key, Mapping):
        return str(foreign_key.get("references") or "").strip()
    return ""


def _normalize_path(path: str) -> str:
    return _PATH_PARAM_RE.sub("/:param", path.strip().split("?", 1)[0].lower().rstrip("/") or "/")


def _entity_has_table(entity: str, table_names: set[str]) -> bool:
    candidates = {entity, f"{entity}s"}
    if entity.endswith("y"):
        candidates.add(f"{entity[:-1]}ies")
    return bool(candidates & table_names)


def _check_missing_artifacts(
    entities: list[dict[str, Any]],
    tables: list[Any] | None,
    endpoints: list[Any] | None,
    pages: list[Any] | None,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if tables is None and entities:
        issues.append(
            _issue(
                "missing-artifact",
                IssueSeverity.ERROR,
                SCHEMA_STAGE,
                f"{len(entities)} entities are declared but the blueprint has no database tables.",
            )
        )
    if endpoints is None and tables:
        issues.append(
            _issue(
                "missing-artifact",
                IssueSeverity.ERROR,
                API_STAGE,
                "Database tables exist but the blueprint has no API endpoint list.",
            )
        )
    if pages is None and endpoints:
        issues.append(
            _issue(
                "missing-artifact",
                IssueSeverity.ERROR,
                PAGES_STAGE,
                "API endpoints exist but the blueprint has no frontend page list.",
            )
        )
    return issues


def _check_entity_tables(entities: list[dict[str, Any]], tables: list[dict[str, Any]]) -> list[ValidationIssue]:
    names = {_name(table).lower() for table in tables}
    variants = names | {name[:-1] for name in names if name.endswith("s")}
    listing = ", ".join(_name(table) for table in tables)
    issues: list[ValidationIssue] = []
    for entity in entities:
        entity_name = _name(entity)
        if entity_name and not _entity_has_table(entity_name.lower(), variants):
            issues.append(
                _issue(
                    "missing-structure",
                    IssueSeverity.ERROR,
                    SCHEMA_STAGE,
                    f'Entity "{entity_name}" has no matching DB table. Tables: [{listing}]',
                )
            )
    return issues


def _check_foreign_keys(tables: list[dict[str, Any]]) -> list[ValidationIssue]:
    names = {_name(table).lower() for table in tables}
    issues: list[ValidationIssue] = []
    for table in tables:
        for foreign_key in _list_or_none(table.get("foreign_keys")) or []:
            reference = foreign_key_reference(foreign_key)
            match = _REFERENCE_RE.match(reference)
            if match is None:
                continue
            target = match.group(1).lower()
            if target not in names:
                issues.append(
                    _issue(
                        "invalid-reference",
                        IssueSeverity.ERROR,
                        SCHEMA_STAGE,
                        f'Table "{_name(table)}" has a foreign key referencing "{reference}" '
                        f'but table "{target}" does not exist.',
                    )
                )
    return issues


def _check_endpoint_tables(endpoints: list[dict[str, Any]], tables: list[dict[str, Any]]) -> list[ValidationIssue]:
    names = {_name(table).lower() for table in tables}
    issues: list[ValidationIssue] = []
    for endpoint in endpoints:
        related = _name(endpoint, "related_table")
        if related and related.lower() not in names:
            issues.append(
                _issue(
                    "orphan-endpoint",
                    IssueSeverity.ERROR,
                    API_STAGE,
                    f'API "{_name(endpoint, "method")} {_name(endpoint, "path")}" references table '
                    f'"{related}" which doesn\'t exist.',
                )
            )
    return issues


def _page_api_calls(page: Mapping[str, Any]) -> Iterable[tuple[str, str]]:
    for component in _dicts(page.get("components")):
        for call in _list_or_none(component.get("api_calls")) or []:
            if isinstance(call, str) and call.strip():
                yield _name(component), call


def _check_page_endpoints(pages: list[dict[str, Any]], endpoints: list[dict[str, Any]]) -> list[ValidationIssue]:
    known = {_normalize_path(_name(endpoint, "path")) for endpoint in endpoints if _name(endpoint, "path")}
    issues: list[ValidationIssue] = []
    for page in pages:
        for component, call in _page_api_calls(page):
            if _normalize_path(call) not in known:
                issues.append(
                    _issue(
                        "missing-endpoint",
                        IssueSeverity.WARNING,
                        API_STAGE,
                        f'Page "{_name(page)}" -> Component "{component}" calls "{call}" '
                        "but no matching API endpoint exists.",
                    )
                )
    return issues


def _check_auth_consistency(pages: list[dict[str, Any]], endpoints: list[dict[str, Any]]) -> list[ValidationIssue]:
    protected = {
        _normalize_path(_name(endpoint, "path"))
        for endpoint in endpoints
        if endpoint.get("requires_auth") and _name(endpoint, "path")
    }
    issues: list[ValidationIssue] = []
    for page in pages:
        if page.get("requires_auth"):
            continue
        for component in _dicts(page.get("components")):
            calls = [call for call in _list_or_none(component.get("api_calls")) or [] if isinstance(call, str)]
            if any(_normalize_path(call) in protected for call in calls):
                issues.append(
                    _issue(
                        "auth-mismatch",
                        IssueSeverity.WARNING,
                        PAGES_STAGE,
                        f'Page "{_name(page)}" calls an auth-required API from component '
                        f'"{_name(component)}" but the page does not require auth.',
                    )
                )
    return issues


def _check_orphan_tables(tables: list[dict[str, Any]], endpoints: list[dict[str, Any]]) -> list[ValidationIssue]:
    referenced = {_name(endpoint, "related_table").lower() for endpoint in endpoints}
    issues: list[ValidationIssue] = []
    for table in tables:
        name = _name(table).lower()
        # Junction tables (user_roles, task_tags) are reached through their parents.
        if not name or "_" in name or name in referenced:
            continue
        issues.append(
            _issue(
                "orphan-structure",
                IssueSeverity.WARNING,
                API_STAGE,
                f'Table "{_name(table)}" exists but no API endpoint references it. '
                "Either add endpoints or remove the table.",
            )
        )
    return issues


def collect_issues(blueprint: Mapping[str, Any]) -> list[ValidationIssue]:
    """Run every consistency check in order and return the issues found.

    Missing-artifact checks run first; checks that need an absent artifact are skipped
    instead of dereferencing it.
    """
    entities = _dicts(blueprint.get("entities"))
    schema = blueprint.get("db_schema")
    raw_tables = _list_or_none(schema.get("tables")) if isinstance(schema, Mapping) else None
    raw_endpoints = _list_or_none(blueprint.get("api_endpoints"))
    raw_pages = _list_or_none(blueprint.get("frontend_pages"))

    issues = _check_missing_artifacts(entities, raw_tables, raw_endpoints, raw_pages)
    tables = _dicts(raw_tables)
    endpoints = _dicts(raw_endpoints)
    pages = _dicts(raw_pages)

    if raw_tables is not None:
        issues.extend(_check_entity_tables(entities, tables))
        issues.extend(_check_foreign_keys(tables))
    if raw_tables is not None and raw_endpoints is not None:
        issues.extend(_check_endpoint_tables(endpoints, tables))
    if raw_pages is not None and raw_endpoints is not None:
        issues.extend(_check_page_endpoints(pages, endpoints))
        issues.extend(_check_auth_consistency(pages, endpoints))
    if raw_tables is not None and raw_endpoints is not None:
        issues.extend(_check_orphan_tables(tables, endpoints))
    return issues


def select_route_target(issues: list[ValidationIssue]) -> str | None:
    """Pick the stage to revisit.

    The first error wins. With warnings only, the most frequent target wins; ties go to
    the target encountered first.
    """
    for issue in issues:
        if issue.severity == IssueSeverity.ERROR:
            return issue.route_target
    if not issues:
        return None
    counts = Counter(issue.route_target for issue in issues)
    return max(counts, key=counts.__getitem__)


def validate_blueprint(
    blueprint: Mapping[str, Any],
    cycle_count: int,
    *,
    max_cycles: int = MAX_VALIDATION_CYCLES,
) -> ValidationOutcome:
    issues = collect_issues(blueprint)
    next_cycle_count = cycle_count + 1
    if not issues:
        return ValidationOutcome(passed=True, issues=[], next_cycle_count=next_cycle_count)
    if cycle_count >= max_cycles:
        return ValidationOutcome(passed=True, issues=issues, next_cycle_count=next_cycle_count, forced=True)
    return ValidationOutcome(
        passed=False,
        issues=issues,
        next_cycle_count=next_cycle_count,
        route_target=select_route_target(issues),
    )


def validate_state(
    state: Mapping[str, Any],
    cycle_count: int | None = None,
    *,
    max_cycles: int = MAX_VALIDATION_CYCLES,
) -> ValidationOutcome:
    """Validate the blueprint held in a state snapshot, defaulting to its recorded cycle count."""
    if cycle_count is None:
        cycle_count = int((state.get("blueprint_validation") or {}).get("validation_cycles", 0))
    return validate_blueprint(state.get("blueprint") or {}, cycle_count, max_cycles=max_cycles)


def make_blueprint_validator_node(
    max_cycles: int = MAX_VALIDATION_CYCLES,
) -> Callable[[Mapping[str, Any]], dict[str, Any]]:
    def blueprint_validator(state: Mapping[str, Any]) -> dict[str, Any]:
        outcome = validate_state(state, max_cycles=max_cycles)
        validation = {
            "passed": outcome.passed,
            "issues": outcome.issues,
            "validation_cycles": outcome.next_cycle_count,
            "route_target": outcome.route_target,
            "forced": outcome.forced,
        }

        if outcome.passed and not outcome.forced:
            logger.info("Blueprint is valid; all cross-checks passed")
            return {"blueprint_validation": validation, "current_phase": "planner"}

        if outcome.forced:
            logger.warning(
                "Max validation cycles (%d) reached; proceeding with %d error(s), %d warning(s) unresolved",
                max_cycles,
                len(outcome.errors),
                len(outcome.warnings),
            )
            for issue in outcome.issues:
                logger.warning("  accepted %s [%s]: %s", issue.severity.value, issue.kind, issue.message)
            return {"blueprint_validation": validation, "current_phase": "planner"}

        logger.info(
            "Found %d error(s), %d warning(s) (cycle %d/%d); routing back to %s",
            len(outcome.errors),
            len(outcome.warnings),
            outcome.next_cycle_count,
            max_cycles,
            outcome.route_target,
        )
        for issue in outcome.issues:
            logger.info("  %s [%s]: %s", issue.severity.value, issue.kind, issue.message)
        return {"blueprint_validation": validation}

    return blueprint_validator


def route_after_validation(state: Mapping[str, Any]) -> str:
    validation = state.get("blueprint_validation") or {}
    if validation.get("passed"):
        return Stage.PLANNER_AGENT.value
    target = validation.get("route_target")
    if target:
        return str(target)
    issues = [ValidationIssue.model_validate(issue) for issue in validation.get("issues") or []]
    return select_route_target(issues) or Stage.PLANNER_AGENT.value
