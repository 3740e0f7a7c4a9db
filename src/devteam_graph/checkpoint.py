from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import Checkpoint as LangGraphCheckpoint
from langgraph.checkpoint.base import CheckpointMetadata, empty_checkpoint
from langgraph.checkpoint.serde.jsonplus import JsonPlusSerializer
from langgraph.checkpoint.sqlite import SqliteSaver
from pydantic import ValidationError

from .canonical import state_digest
from .models import Checkpoint
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence boundary for run checkpoints. ``load`` returns the latest checkpoint of a run."""

    def save(self, run_id: str, checkpoint: Checkpoint) -> None:
        ...

    def load(self, run_id: str) -> Checkpoint | None:
        ...

    def delete(self, run_id: str) -> None:
        ...


class MemoryCheckpointStore:
    """In-process store. Checkpoints are copied on the way in and out."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}

    def save(self, run_id: str, checkpoint: Checkpoint) -> None:
        self._checkpoints[run_id] = checkpoint.model_copy(deep=True)

    def load(self, run_id: str) -> Checkpoint | None:
        checkpoint = self._checkpoints.get(run_id)
        return checkpoint.model_copy(deep=True) if checkpoint is not None else None

    def delete(self, run_id: str) -> None:
        self._checkpoints.pop(run_id, None)

    def __len__(self) -> int:
        return len(self._checkpoints)


class SqliteCheckpointStore:
    """Durable store on langgraph's ``SqliteSaver``, one thread per run.

    Each save is written as a langgraph checkpoint whose single channel holds the
    serialized :class:`Checkpoint`; ``load`` reads the newest one back and re-verifies
    the state digest. Earlier checkpoints stay in the saver's history.
    """

    CHANNEL = "devteam_checkpoint"

    def __init__(self, path: Path) -> None:
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self.saver = SqliteSaver(self._conn, serde=JsonPlusSerializer())

    @staticmethod
    def _config(run_id: str) -> RunnableConfig:
        return {"configurable": {"thread_id": run_id, "checkpoint_ns": ""}}

    def save(self, run_id: str, checkpoint: Checkpoint) -> None:
        record = empty_checkpoint()
        record["channel_values"] = {self.CHANNEL: checkpoint.model_dump(mode="json")}
        metadata: CheckpointMetadata = {"source": "loop", "step": checkpoint.step, "parents": {}}
        self.saver.put(self._config(run_id), record, metadata, {})

    def _decode(self, run_id: str, record: LangGraphCheckpoint) -> Checkpoint:
        data = record["channel_values"].get(self.CHANNEL)
        try:
            checkpoint = Checkpoint.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"checkpoint for run {run_id} at {self.path} failed validation: {exc}") from exc
        if checkpoint.digest and checkpoint.digest != state_digest(checkpoint.state):
            raise ValueError(f"checkpoint for run {run_id} at {self.path} has a corrupt state payload")
        return checkpoint

    def load(self, run_id: str) -> Checkpoint | None:
        saved = self.saver.get_tuple(self._config(run_id))
        if saved is None:
            return None
        return self._decode(run_id, saved.checkpoint)

    def history(self, run_id: str) -> list[Checkpoint]:
        """Every checkpoint saved for ``run_id``, newest first."""
        return [self._decode(run_id, saved.checkpoint) for saved in self.saver.list(self._config(run_id))]

    def delete(self, run_id: str) -> None:
        self.saver.delete_thread(run_id)

    def list_runs(self) -> list[str]:
        return sorted({saved.config["configurable"]["thread_id"] for saved in self.saver.list(None)})

    def close(self) -> None:
        self._conn.close()


def build_checkpoint_store(settings: RuntimeSettings, repo_root: Path | None = None) -> CheckpointStore:
    """Select the checkpoint backend named by ``settings.checkpoint_backend``."""
    if settings.checkpoint_backend == "memory":
        logger.info("Using in-memory checkpoint store")
        return MemoryCheckpointStore()
    path = settings.checkpoint_path(repo_root if repo_root is not None else Path.cwd())
    logger.info("Using sqlite checkpoint store at %s", path)
    return SqliteCheckpointStore(path)
