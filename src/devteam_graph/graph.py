"""Workflow graph engine: named nodes, static and conditional edges, checkpointed execution.

The graph is plain data: an adjacency map from node name to either a static successor or a
router. Cycles are ordinary edges resolved again on every visit, never recursive calls, so
the safety ceiling is a simple counter. ``START`` and ``END`` are langgraph's markers, which
lets routers written for langgraph graphs return the same terminal value.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from langgraph.graph import END, START

from .canonical import state_digest
from .checkpoint import CheckpointStore
from .errors import GraphConfigurationError, SafetyCeilingExceededError, UnknownNodeError
from .models import Checkpoint, RunStatus
from .state import StateStore

logger = logging.getLogger(__name__)

NodeFn = Callable[[Mapping[str, Any]], Mapping[str, Any] | None]
Router = Callable[[Mapping[str, Any]], str]

__all__ = ["END", "START", "CompiledWorkflow", "RunResult", "WorkflowGraph"]


@dataclass(frozen=True)
class _ConditionalEdge:
    router: Router
    path_map: dict[str, str] | None


@dataclass
class RunResult:
    run_id: str
    status: RunStatus
    state: dict[str, Any]
    next_node: str
    steps: int

    @property
    def completed(self) -> bool:
        return self.status == RunStatus.COMPLETED


class WorkflowGraph:
    """Builder for a workflow graph over a :class:`StateStore` schema."""

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._nodes: dict[str, NodeFn] = {}
        self._entry: str | None = None
        self._static: dict[str, str] = {}
        self._conditional: dict[str, _ConditionalEdge] = {}

    def add_node(self, name: str, fn: NodeFn) -> "WorkflowGraph":
        if name in (START, END):
            raise GraphConfigurationError(f"{name!r} is reserved and cannot be used as a node name")
        if name in self._nodes:
            raise GraphConfigurationError(f"Node {name!r} is already registered")
        self._nodes[name] = fn
        return self

    def add_edge(self, source: str, target: str) -> "WorkflowGraph":
        if source == START:
            if self._entry is not None:
                raise GraphConfigurationError(f"Entry node already set to {self._entry!r}")
            self._entry = target
            return self
        if source in self._static or source in self._conditional:
            raise GraphConfigurationError(f"Node {source!r} already has an outgoing edge")
        self._static[source] = target
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        path_map: Mapping[str, str] | None = None,
    ) -> "WorkflowGraph":
        if source in self._static or source in self._conditional:
            raise GraphConfigurationError(f"Node {source!r} already has an outgoing edge")
        self._conditional[source] = _ConditionalEdge(router=router, path_map=dict(path_map) if path_map else None)
        return self

    def _validate(self) -> None:
        if self._entry is None:
            raise GraphConfigurationError("Graph has no entry node; add an edge from START")
        if self._entry not in self._nodes:
            raise GraphConfigurationError(f"Entry node {self._entry!r} is not registered")

        for name in self._nodes:
            if name not in self._static and name not in self._conditional:
                raise GraphConfigurationError(f"Node {name!r} has no outgoing edge")

        for source, target in self._static.items():
            if source not in self._nodes:
                raise GraphConfigurationError(f"Edge source {source!r} is not a registered node")
            if target != END and target not in self._nodes:
                raise GraphConfigurationError(f"Edge {source!r} -> {target!r} targets an unregistered node")

        for source, edge in self._conditional.items():
            if source not in self._nodes:
                raise GraphConfigurationError(f"Conditional edge source {source!r} is not a registered node")
            for target in (edge.path_map or {}).values():
                if target != END and target not in self._nodes:
                    raise GraphConfigurationError(
                        f"Conditional edge from {source!r} maps to unregistered node {target!r}"
                    )

    def compile(
        self,
        checkpointer: CheckpointStore,
        *,
        recursion_limit: int = 200,
        interrupt_before: Iterable[str] = (),
    ) -> "CompiledWorkflow":
        self._validate()
        interrupts = frozenset(interrupt_before)
        unknown = sorted(interrupts - set(self._nodes))
        if unknown:
            raise GraphConfigurationError(f"interrupt_before names unregistered node(s): {', '.join(unknown)}")
        if recursion_limit < 1:
            raise GraphConfigurationError("recursion_limit must be >= 1")
        return CompiledWorkflow(
            store=self.store,
            nodes=dict(self._nodes),
            entry=self._entry,
            static_edges=dict(self._static),
            conditional_edges=dict(self._conditional),
            checkpointer=checkpointer,
            recursion_limit=recursion_limit,
            interrupt_before=interrupts,
        )


class CompiledWorkflow:
    """Executable graph. One run at a time per ``run_id``; nodes run strictly sequentially."""

    def __init__(
        self,
        *,
        store: StateStore,
        nodes: dict[str, NodeFn],
        entry: str,
        static_edges: dict[str, str],
        conditional_edges: dict[str, _ConditionalEdge],
        checkpointer: CheckpointStore,
        recursion_limit: int,
        interrupt_before: frozenset[str],
    ) -> None:
        self.store = store
        self.nodes = nodes
        self.entry = entry
        self.static_edges = static_edges
        self.conditional_edges = conditional_edges
        self.checkpointer = checkpointer
        self.recursion_limit = recursion_limit
        self.interrupt_before = interrupt_before
        self._abort_requested = False

    def abort(self) -> None:
        """Stop before the next node executes, in this invocation or the next one.

        The request is consumed when honored; the last checkpoint stays the resume point.
        """
        self._abort_requested = True

    def get_checkpoint(self, run_id: str) -> Checkpoint | None:
        return self.checkpointer.load(run_id)

    def update_state(self, run_id: str, update: Mapping[str, Any]) -> Checkpoint:
        """Apply ``update`` to the latest checkpoint of ``run_id`` without executing a node.

        The saved checkpoint keeps its next node, step and status, so a suspended run stays
        suspended and a failed run resumes where it stopped, now with the corrected state.

        Raises:
            KeyError: If the run has no checkpoint.
            UnknownFieldError: If ``update`` names an undeclared field.
        """
        checkpoint = self.checkpointer.load(run_id)
        if checkpoint is None:
            raise KeyError(f"Run {run_id} has no checkpoint to update")
        state = self.store.apply_update(checkpoint.state, update)
        saved = checkpoint.model_copy(update={"state": state, "digest": state_digest(state)})
        self.checkpointer.save(run_id, saved)
        logger.info("Run %s state updated at step %d: %s", run_id, saved.step, ", ".join(sorted(update)))
        return saved

    def resolve_next(self, node: str, state: Mapping[str, Any]) -> str:
        """Resolve the successor of ``node`` against the post-update state."""
        if node in self.static_edges:
            return self.static_edges[node]

        edge = self.conditional_edges[node]
        choice = edge.router(self.store.snapshot(state))
        target = choice
        if edge.path_map is not None:
            if choice not in edge.path_map:
                raise UnknownNodeError(
                    f"Router for {node!r} returned {choice!r}, which is not in its path map "
                    f"({', '.join(sorted(edge.path_map))})"
                )
            target = edge.path_map[choice]
        if target != END and target not in self.nodes:
            raise UnknownNodeError(f"Router for {node!r} returned unregistered node {target!r}")
        logger.info("Route %s -> %s", node, target)
        return target

    def _result(self, checkpoint: Checkpoint, status: RunStatus | None = None) -> RunResult:
        return RunResult(
            run_id=checkpoint.run_id,
            status=status or checkpoint.status,
            state=dict(checkpoint.state),
            next_node=checkpoint.next_node,
            steps=checkpoint.step,
        )

    def run(
        self,
        inputs: Mapping[str, Any] | None = None,
        *,
        run_id: str,
        max_steps: int | None = None,
    ) -> RunResult:
        """Create or resume the run ``run_id`` and execute nodes until it ends, suspends, or pauses.

        Args:
            inputs: Partial update applied through the reducers before execution. On a fresh
                run it seeds the document; on a suspended run it carries the human answers.
            run_id: Identifier of the run; checkpoints are keyed by it.
            max_steps: Optional number of nodes to execute in this invocation before returning
                a ``paused`` result. The checkpoint written by the last node is the resume point.

        Returns:
            RunResult describing where the run stopped.

        Raises:
            UnknownFieldError: If ``inputs`` or a node update names an undeclared field.
            UnknownNodeError: If a router returns a name that is not registered.
            SafetyCeilingExceededError: If this invocation executes more than ``recursion_limit`` nodes.
            Exception: Any exception raised by a node propagates unchanged.
        """
        checkpoint = self.checkpointer.load(run_id)

        if checkpoint is None:
            state = self.store.apply_update(self.store.initial(), inputs)
            node = self.entry
            step = 0
            logger.info("Starting run %s at %s", run_id, node)
        elif checkpoint.status == RunStatus.COMPLETED:
            logger.info("Run %s already completed at step %d", run_id, checkpoint.step)
            return self._result(checkpoint)
        elif checkpoint.status == RunStatus.SUSPENDED and not inputs:
            logger.info("Run %s is waiting for input before %s", run_id, checkpoint.next_node)
            return self._result(checkpoint)
        else:
            state = self.store.apply_update(checkpoint.state, inputs)
            node = checkpoint.next_node
            step = checkpoint.step
            logger.info("Resuming run %s at %s (step %d)", run_id, node, step)

        executed = 0
        while node != END:
            if self._abort_requested:
                self._abort_requested = False
                logger.warning("Run %s aborted before %s", run_id, node)
                return RunResult(run_id=run_id, status=RunStatus.ABORTED, state=state, next_node=node, steps=step)
            if max_steps is not None and executed >= max_steps:
                return RunResult(run_id=run_id, status=RunStatus.PAUSED, state=state, next_node=node, steps=step)
            if executed >= self.recursion_limit:
                raise SafetyCeilingExceededError(
                    f"Run {run_id} executed {executed} nodes without reaching END "
                    f"(recursion_limit={self.recursion_limit}); last node {node!r}"
                )

            logger.debug("Run %s executing %s", run_id, node)
            try:
                update = self.nodes[node](self.store.snapshot(state))
            except Exception:
                logger.error("Node %s failed in run %s; last checkpoint kept at step %d", node, run_id, step)
                raise
            state = self.store.apply_update(state, update)
            next_node = self.resolve_next(node, state)
            executed += 1
            step += 1

            if next_node == END:
                status = RunStatus.COMPLETED
            elif next_node in self.interrupt_before:
                status = RunStatus.SUSPENDED
            else:
                status = RunStatus.PENDING
            saved = Checkpoint(
                run_id=run_id,
                next_node=next_node,
                completed_node=node,
                step=step,
                status=status,
                state=state,
                digest=state_digest(state),
            )
            self.checkpointer.save(run_id, saved)
            logger.debug("Checkpoint saved for run %s after %s (step %d, next %s)", run_id, node, step, next_node)

            if status == RunStatus.SUSPENDED:
                logger.info("Run %s suspended before %s", run_id, next_node)
                return self._result(saved)
            node = next_node

        logger.info("Run %s completed after %d step(s)", run_id, step)
        return RunResult(run_id=run_id, status=RunStatus.COMPLETED, state=state, next_node=END, steps=step)
