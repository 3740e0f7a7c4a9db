"""Delegating stage agents: PM, the five architect steps, and the planner.

Each node builds one :class:`CallSpec`, runs it through the budgeted adapter against the
current state's ledger and budget, and returns a partial update carrying its usage delta.
Budget refusals and exhausted retries propagate to the engine unchanged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .adapter import BudgetedCallAdapter, CallSpec
from .stages import Stage
from .validation import foreign_key_reference

logger = logging.getLogger(__name__)


PM_PROMPT = """You are the PM Agent in an AI software development team.

ROLE: Senior project manager who converts vague requirements into clear, actionable specifications.

GOAL: Analyze the user's project requirement and either ask clarifying questions when it is
ambiguous, or produce a complete project specification when it is clear enough.

BOUNDARIES:
- At most 5-8 clarifying questions; pick the most important ones.
- Do NOT ask about the tech stack: React (Vite) frontend, Express.js backend, PostgreSQL or MongoDB.
- Do NOT ask obvious questions. A "todo app" obviously needs CRUD operations.
- Make reasonable assumptions for minor details and state them in the spec.
- Focus questions on business logic ambiguity: user roles, permissions, data relationships, workflows.

OUTPUT FORMAT, one of:
{"status": "needs_clarification", "questions": ["..."], "assumptions": ["..."]}
{"status": "spec_ready", "spec": {
  "app_name": "my-app", "description": "One line", "user_roles": ["admin", "user"],
  "auth_required": true,
  "features": [{"name": "...", "description": "...", "sub_features": ["..."], "user_access": ["user"]}],
  "database_recommendation": "PostgreSQL", "database_reason": "...",
  "pages": [{"name": "...", "route": "/route", "description": "...", "requires_auth": true}],
  "assumptions": ["..."]}}

RULES:
- If the requirement is already detailed enough, go straight to spec_ready.
- The spec must be complete enough for an architect to design the database and APIs from it."""

ENTITIES_PROMPT = """You are the Architect Agent. Identify ALL entities (data models) and their
relationships from the project spec.

OUTPUT FORMAT:
{"entities": [{"name": "EntityName", "description": "One line",
  "relationships": [{"target": "OtherEntity", "type": "one-to-many | many-to-many | one-to-one",
                     "description": "How they relate"}]}]}

RULES:
- Always include a "User" entity if auth is required.
- Think about implicit entities (categories, tags, etc.)."""

SCHEMA_PROMPT = """You are the Architect Agent designing the database schema.

OUTPUT FORMAT:
{"database_type": "PostgreSQL | MongoDB", "database_reason": "One line",
 "tables": [{"name": "table_name", "description": "...",
   "fields": [{"name": "field_name", "type": "VARCHAR(255) | INTEGER | UUID | ...",
               "constraints": ["PRIMARY KEY"], "description": "..."}],
   "foreign_keys": [{"field": "local_field", "references": "other_table(field)", "on_delete": "CASCADE"}],
   "indexes": ["field1", "field1,field2"]}]}

RULES:
- Every entity gets a table; table names are the snake_case plural of the entity name.
- Every table has "id" (UUID), "created_at", "updated_at".
- Foreign keys may only reference tables in this schema.
- If auth is required the users table stores password_hash, never plain passwords."""

API_PROMPT = """You are the Architect Agent designing REST API endpoints (Express.js, JWT auth, JSON).

OUTPUT FORMAT:
{"api_endpoints": [{"method": "GET | POST | PUT | PATCH | DELETE", "path": "/api/resource/:id",
  "description": "...", "requires_auth": true, "role_access": ["user"],
  "request_body": {}, "response_body": {}, "related_table": "exact table name from the schema"}]}

RULES:
- Every table is served by at least one endpoint; related_table names an existing table.
- Include /api/auth/register, /api/auth/login and /api/auth/me when auth is required.
- Every CRUD entity: GET all (paginated), GET by id, POST, PUT, DELETE."""

PAGES_PROMPT = """You are the Architect Agent designing frontend pages (React, React Router).

OUTPUT FORMAT:
{"frontend_pages": [{"name": "PageName", "route": "/route-path", "description": "...",
  "requires_auth": true,
  "components": [{"name": "ComponentName", "description": "...", "api_calls": ["/api/endpoint"]}]}]}

RULES:
- api_calls use the exact endpoint paths from the API design.
- A page that calls an auth-required endpoint must itself require auth.
- Include Login and Register pages when auth is required, plus a layout/navbar component."""

LAYOUT_PROMPT = """You are the Architect Agent generating the project folder structure and dependencies
for an Express.js backend and React (Vite) frontend in a /backend + /frontend monorepo.

OUTPUT FORMAT:
{"folder_structure": "tree-format string listing every folder and file",
 "dependencies": {
   "backend": {"name": "app-backend", "dependencies": {"express": "^4.18.2"}, "dev_dependencies": {}},
   "frontend": {"name": "app-frontend", "dependencies": {"react": "^18.2.0"}, "dev_dependencies": {}}}}

RULES:
- Backend: routes/, middleware/, models/, config/, utils/. Frontend: src/pages/, src/components/,
  src/hooks/, src/context/.
- Exact version numbers."""

PLANNER_PROMPT = """You are the Planner Agent: a senior tech lead who turns the architecture
blueprint into an ordered build plan.

MANDATORY PHASE ORDER: "setup", "middleware", "backend", "frontend", "integration".

OUTPUT FORMAT:
{"phases": [{"phase_number": 1, "phase_name": "setup", "description": "...",
   "tasks": [{"task_id": "setup-1", "title": "...", "description": "...",
              "files_to_create": ["/backend/src/config/db.js"], "files_needed": [],
              "acceptance_criteria": ["..."], "can_parallelize": false, "estimated_tokens": 500}],
   "verification_command": "..."}],
 "total_tasks": 15, "estimated_total_tokens": 8000}

RULES:
- Each task creates 1-3 files. files_needed must be created by an earlier task.
- Tasks in one phase may set can_parallelize only if their files_needed do not overlap.
- Task ids are "<phase_name>-<n>". Keep 10-20 tasks for a typical CRUD app."""


class _Output(BaseModel):
    model_config = ConfigDict(extra="allow")


class PmResponse(_Output):
    status: Literal["needs_clarification", "spec_ready"]
    questions: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    spec: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_status_payload(self) -> "PmResponse":
        if self.status == "needs_clarification" and not self.questions:
            raise ValueError("needs_clarification requires at least one question")
        if self.status == "spec_ready" and not self.spec:
            raise ValueError("spec_ready requires a spec object")
        return self


class EntitiesOutput(_Output):
    entities: list[dict[str, Any]]


class SchemaOutput(_Output):
    database_type: str = ""
    database_reason: str = ""
    tables: list[dict[str, Any]]


class ApiOutput(_Output):
    api_endpoints: list[dict[str, Any]]


class PagesOutput(_Output):
    frontend_pages: list[dict[str, Any]]


class LayoutOutput(_Output):
    folder_structure: str = ""
    dependencies: dict[str, Any] = Field(default_factory=dict)

    @field_validator("folder_structure", mode="before")
    @classmethod
    def _flatten_tree(cls, value: Any) -> Any:
        if isinstance(value, list):
            return "\n".join(str(line) for line in value)
        return value


class BuildPlan(_Output):
    phases: list[dict[str, Any]]
    total_tasks: int = 0
    estimated_total_tokens: int = 0


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _validation_feedback(state: Mapping[str, Any]) -> str:
    """Previous cross-validation issues, appended to the context of a revisited stage."""
    validation = state.get("blueprint_validation") or {}
    issues = validation.get("issues") or []
    if validation.get("passed") or not issues:
        return ""
    return f"\n\nPREVIOUS VALIDATION ISSUES TO FIX:\n{_dump(issues)}"


class DevTeamAgents:
    """Stage nodes that delegate to the reasoning service through one adapter."""

    def __init__(self, adapter: BudgetedCallAdapter) -> None:
        self.adapter = adapter

    def _call(
        self,
        state: Mapping[str, Any],
        *,
        stage: Stage,
        instruction: str,
        context: str,
        schema: type[BaseModel],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        call_spec = CallSpec(agent=stage.value, instruction=instruction, context=context, schema=schema)
        outcome = self.adapter.invoke_for_state(call_spec, state)
        return outcome.result, outcome.usage_delta.model_dump(mode="json")

    def pm_agent(self, state: Mapping[str, Any]) -> dict[str, Any]:
        requirement = state.get("user_requirement", "")
        conversation = state.get("pm_conversation") or []
        if not conversation:
            context = f'User\'s project requirement:\n"{requirement}"'
        else:
            lines = [f'Original requirement:\n"{requirement}"', "", "Conversation so far:"]
            for entry in conversation:
                if entry.get("role") == "pm" and entry.get("questions"):
                    lines.append(f"PM Questions: {json.dumps(entry['questions'], ensure_ascii=False)}")
                elif entry.get("role") == "user":
                    lines.append(f"User Answers: {entry.get('answers', '')}")
            lines.append("")
            lines.append('Now generate the FINAL spec incorporating all the answers. Return status "spec_ready".')
            context = "\n".join(lines)

        response, usage = self._call(
            state, stage=Stage.PM_AGENT, instruction=PM_PROMPT, context=context, schema=PmResponse
        )

        if response["status"] == "needs_clarification":
            questions = response["questions"]
            logger.info("[pm_agent] needs clarification: %d question(s)", len(questions))
            for index, question in enumerate(questions, start=1):
                logger.info("  %d. %s", index, question)
            return {
                "pm_status": "needs_clarification",
                "pm_questions": questions,
                "pm_conversation": {"role": "pm", "questions": questions, "assumptions": response["assumptions"]},
                "token_usage": usage,
                "current_phase": "pm",
            }

        spec = response["spec"]
        logger.info(
            "[pm_agent] spec ready: %s (%d features, %d pages)",
            spec.get("app_name", "?"),
            len(spec.get("features") or []),
            len(spec.get("pages") or []),
        )
        return {
            "pm_status": "spec_ready",
            "clarified_spec": spec,
            "pm_conversation": {"role": "pm", "spec": spec},
            "token_usage": usage,
            "current_phase": "architect",
        }

    def architect_entities(self, state: Mapping[str, Any]) -> dict[str, Any]:
        output, usage = self._call(
            state,
            stage=Stage.ARCHITECT_ENTITIES,
            instruction=ENTITIES_PROMPT,
            context=f"Project Specification:\n{_dump(state.get('clarified_spec'))}",
            schema=EntitiesOutput,
        )
        entities = output["entities"]
        logger.info(
            "[architect_entities] %d entities: %s",
            len(entities),
            ", ".join(str(entity.get("name", "?")) for entity in entities),
        )
        return {"blueprint": {"entities": entities}, "token_usage": usage}

    def architect_schema(self, state: Mapping[str, Any]) -> dict[str, Any]:
        blueprint = state.get("blueprint") or {}
        context = (
            f"Entities:\n{_dump(blueprint.get('entities', []))}\n\n"
            f"Spec:\n{_dump(state.get('clarified_spec'))}{_validation_feedback(state)}"
        )
        schema, usage = self._call(
            state, stage=Stage.ARCHITECT_SCHEMA, instruction=SCHEMA_PROMPT, context=context, schema=SchemaOutput
        )
        logger.info("[architect_schema] %s with %d tables", schema.get("database_type") or "?", len(schema["tables"]))
        return {"blueprint": {"db_schema": schema}, "token_usage": usage}

    def architect_api(self, state: Mapping[str, Any]) -> dict[str, Any]:
        blueprint = state.get("blueprint") or {}
        context = (
            f"DB Schema:\n{_dump(blueprint.get('db_schema', {}))}\n\n"
            f"Spec:\n{_dump(state.get('clarified_spec'))}{_validation_feedback(state)}"
        )
        output, usage = self._call(
            state, stage=Stage.ARCHITECT_API, instruction=API_PROMPT, context=context, schema=ApiOutput
        )
        logger.info("[architect_api] %d endpoints", len(output["api_endpoints"]))
        return {"blueprint": {"api_endpoints": output["api_endpoints"]}, "token_usage": usage}

    def architect_pages(self, state: Mapping[str, Any]) -> dict[str, Any]:
        blueprint = state.get("blueprint") or {}
        context = (
            f"API Endpoints:\n{_dump(blueprint.get('api_endpoints', []))}\n\n"
            f"Spec:\n{_dump(state.get('clarified_spec'))}{_validation_feedback(state)}"
        )
        output, usage = self._call(
            state, stage=Stage.ARCHITECT_PAGES, instruction=PAGES_PROMPT, context=context, schema=PagesOutput
        )
        logger.info("[architect_pages] %d pages", len(output["frontend_pages"]))
        return {"blueprint": {"frontend_pages": output["frontend_pages"]}, "token_usage": usage}

    def architect_layout(self, state: Mapping[str, Any]) -> dict[str, Any]:
        blueprint = state.get("blueprint") or {}
        schema = blueprint.get("db_schema") or {}
        context = (
            f"DB: {schema.get('database_type', '?')} ({len(schema.get('tables') or [])} tables)\n"
            f"APIs: {len(blueprint.get('api_endpoints') or [])} endpoints\n"
            f"Pages: {len(blueprint.get('frontend_pages') or [])} pages\n\n"
            f"Spec:\n{_dump(state.get('clarified_spec'))}"
        )
        output, usage = self._call(
            state, stage=Stage.ARCHITECT_LAYOUT, instruction=LAYOUT_PROMPT, context=context, schema=LayoutOutput
        )
        dependencies = output["dependencies"]
        logger.info(
            "[architect_layout] backend deps: %d, frontend deps: %d",
            len((dependencies.get("backend") or {}).get("dependencies") or {}),
            len((dependencies.get("frontend") or {}).get("dependencies") or {}),
        )
        return {
            "blueprint": {"folder_structure": output["folder_structure"], "dependencies": dependencies},
            "token_usage": usage,
        }

    def planner_agent(self, state: Mapping[str, Any]) -> dict[str, Any]:
        blueprint = state.get("blueprint") or {}
        spec = state.get("clarified_spec") or {}
        schema = blueprint.get("db_schema") or {}
        dependencies = blueprint.get("dependencies") or {}
        # A condensed view keeps the planner's context small.
        summary = {
            "database_type": schema.get("database_type"),
            "tables": [
                {
                    "name": table.get("name"),
                    "field_count": len(table.get("fields") or []),
                    "foreign_keys": [ref for ref in map(foreign_key_reference, table.get("foreign_keys") or []) if ref],
                }
                for table in schema.get("tables") or []
            ],
            "api_endpoints": [
                {
                    "method": endpoint.get("method"),
                    "path": endpoint.get("path"),
                    "related_table": endpoint.get("related_table"),
                    "requires_auth": endpoint.get("requires_auth"),
                }
                for endpoint in blueprint.get("api_endpoints") or []
            ],
            "frontend_pages": [
                {"name": page.get("name"), "route": page.get("route"), "component_count": len(page.get("components") or [])}
                for page in blueprint.get("frontend_pages") or []
            ],
            "folder_structure": blueprint.get("folder_structure"),
            "backend_deps": sorted((dependencies.get("backend") or {}).get("dependencies") or {}),
            "frontend_deps": sorted((dependencies.get("frontend") or {}).get("dependencies") or {}),
        }
        context = f"App: {spec.get('app_name', '')}\n\nBlueprint Summary:\n{_dump(summary)}\n\nSpec:\n{_dump(spec)}"
        plan, usage = self._call(
            state, stage=Stage.PLANNER_AGENT, instruction=PLANNER_PROMPT, context=context, schema=BuildPlan
        )

        logger.info("[planner_agent] %d phases, %d tasks", len(plan["phases"]), plan["total_tasks"])
        for phase in plan["phases"]:
            tasks = phase.get("tasks") or []
            parallel = sum(1 for task in tasks if task.get("can_parallelize"))
            logger.info(
                "  phase %s: %s (%d tasks, %d parallelizable)",
                phase.get("phase_number", "?"),
                phase.get("phase_name", "?"),
                len(tasks),
                parallel,
            )
        return {"task_queue": plan, "token_usage": usage, "current_phase": "workspace"}
