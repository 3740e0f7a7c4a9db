from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class RunStatus(str, Enum):
    PENDING = "pending"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    # Result-only statuses; never persisted in a checkpoint.
    PAUSED = "paused"
    ABORTED = "aborted"


class ValidationIssue(BaseModel):
    """One cross-artifact defect and the upstream node responsible for fixing it."""

    model_config = ConfigDict(frozen=True)

    kind: str
    severity: IssueSeverity
    route_target: str
    message: str


class ValidationOutcome(BaseModel):
    """Result of one cross-validation pass."""

    passed: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    next_cycle_count: int
    route_target: str | None = None
    forced: bool = False

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == IssueSeverity.WARNING]


class CallRecord(BaseModel):
    call_id: str = Field(default_factory=lambda: f"CALL-{uuid.uuid4().hex[:12]}")
    agent: str
    input_units: int
    output_units: int
    cost: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UsageDelta(BaseModel):
    """Consumption contributed by exactly one successful delegated call."""

    added_input_units: int = 0
    added_output_units: int = 0
    added_cost: float = 0.0
    new_call_records: list[CallRecord] = Field(default_factory=list)


class UsageLedger(BaseModel):
    calls: list[CallRecord] = Field(default_factory=list)
    total_input_units: int = 0
    total_output_units: int = 0
    estimated_cost: float = 0.0


class FileEntry(BaseModel):
    """A produced artifact, identified by its workspace-relative path."""

    path: str
    purpose: str = ""
    exports: list[str] = Field(default_factory=list)


class Checkpoint(BaseModel):
    """Immutable snapshot persisted after each successfully completed node."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    next_node: str
    completed_node: str | None = None
    step: int = 0
    status: RunStatus = RunStatus.PENDING
    state: dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    digest: str = ""
