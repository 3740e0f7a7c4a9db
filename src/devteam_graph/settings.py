from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

CHECKPOINT_BACKENDS = frozenset({"memory", "sqlite"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    token_budget: float = 2.0
    max_validation_cycles: int = 2
    max_call_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    recursion_limit: int = 200
    checkpoint_backend: str = "sqlite"
    checkpoint_db: str = "state_store/checkpoints/devteam.sqlite"
    model_name: str = "gpt-4o-mini"
    input_cost_per_million: float = 0.15
    output_cost_per_million: float = 0.60
    request_timeout_seconds: int = 120
    max_workspace_setup_attempts: int = 2
    workspace_root: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            token_budget=_get_env_float("DEVTEAM_TOKEN_BUDGET", default=2.0, minimum=0.0),
            max_validation_cycles=_get_env_int("DEVTEAM_MAX_VALIDATION_CYCLES", default=2, minimum=0, maximum=20),
            max_call_attempts=_get_env_int("DEVTEAM_MAX_CALL_ATTEMPTS", default=3, minimum=1, maximum=10),
            retry_backoff_seconds=_get_env_float("DEVTEAM_RETRY_BACKOFF_SECONDS", default=1.0, minimum=0.0),
            recursion_limit=_get_env_int("DEVTEAM_RECURSION_LIMIT", default=200, minimum=10, maximum=100_000),
            checkpoint_backend=os.getenv("DEVTEAM_CHECKPOINT_BACKEND", "sqlite"),
            checkpoint_db=os.getenv("DEVTEAM_CHECKPOINT_DB", "state_store/checkpoints/devteam.sqlite"),
            model_name=os.getenv("DEVTEAM_MODEL", "gpt-4o-mini"),
            input_cost_per_million=_get_env_float("DEVTEAM_INPUT_COST_PER_MILLION", default=0.15, minimum=0.0),
            output_cost_per_million=_get_env_float("DEVTEAM_OUTPUT_COST_PER_MILLION", default=0.60, minimum=0.0),
            request_timeout_seconds=_get_env_int("DEVTEAM_REQUEST_TIMEOUT", default=120, minimum=1, maximum=3_600),
            max_workspace_setup_attempts=_get_env_int(
                "DEVTEAM_MAX_WORKSPACE_SETUP_ATTEMPTS", default=2, minimum=1, maximum=10
            ),
            workspace_root=os.getenv("DEVTEAM_WORKSPACE_ROOT", ""),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to the system temp dir if unset."""
        if self.workspace_root:
            return Path(self.workspace_root)
        return Path(tempfile.gettempdir()) / "devteam-workspaces"

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.token_budget <= 0:
            raise ValueError(f"DEVTEAM_TOKEN_BUDGET must be > 0, got: {self.token_budget}")

        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("DEVTEAM_MODEL must be non-empty")

        backend = self.checkpoint_backend.strip().lower()
        if backend not in CHECKPOINT_BACKENDS:
            raise ValueError(
                f"DEVTEAM_CHECKPOINT_BACKEND must be one of: {', '.join(sorted(CHECKPOINT_BACKENDS))}"
            )
        if not self.checkpoint_db.strip():
            raise ValueError("DEVTEAM_CHECKPOINT_DB must be non-empty")

        return RuntimeSettings(
            token_budget=self.token_budget,
            max_validation_cycles=self.max_validation_cycles,
            max_call_attempts=self.max_call_attempts,
            retry_backoff_seconds=self.retry_backoff_seconds,
            recursion_limit=self.recursion_limit,
            checkpoint_backend=backend,
            checkpoint_db=self.checkpoint_db,
            model_name=model_name,
            input_cost_per_million=self.input_cost_per_million,
            output_cost_per_million=self.output_cost_per_million,
            request_timeout_seconds=self.request_timeout_seconds,
            max_workspace_setup_attempts=self.max_workspace_setup_attempts,
            workspace_root=self.workspace_root.strip(),
        )

    def checkpoint_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Read integer env var ``name``, falling back to ``default`` when unset.

    Raises:
        ValueError: If the value is not an integer or falls outside [minimum, maximum].
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1_000_000.0) -> float:
    """Parse a float from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
