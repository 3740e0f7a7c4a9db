"""Error taxonomy shared by the engine, the call adapter, and the stage nodes."""

from __future__ import annotations


class DevTeamError(RuntimeError):
    """Base class for every error raised by devteam_graph."""


class BudgetExceededError(DevTeamError):
    """Raised before a delegated call when the run has already spent its budget.

    Never retried. Propagates to the node that issued the call and from there to the run caller.
    """

    def __init__(self, cumulative_cost: float, budget: float) -> None:
        self.cumulative_cost = cumulative_cost
        self.budget = budget
        super().__init__(f"Token budget exceeded: ${cumulative_cost:.4f} >= budget ${budget:.4f}")


class StructuredOutputError(DevTeamError):
    """The delegated call answered, but the answer is not the expected structured form."""


class ChannelError(DevTeamError):
    """The delegated call itself failed (transport, timeout, provider error)."""


class CallFailedError(DevTeamError):
    """Terminal failure of a delegated call after exhausting its attempts."""

    STRUCTURED_OUTPUT = "structured_output"
    CHANNEL = "channel"

    def __init__(self, *, agent: str, attempts: int, reason: str, last_error: BaseException | None) -> None:
        self.agent = agent
        self.attempts = attempts
        self.reason = reason
        self.last_error = last_error
        if reason == self.STRUCTURED_OUTPUT:
            summary = "could not obtain structurally valid output"
        else:
            summary = "underlying call channel failed"
        super().__init__(f"[{agent}] {summary} after {attempts} attempt(s); last error: {last_error}")


class InvariantViolationError(DevTeamError):
    """Programming or configuration defect. Always fatal, never retried."""


class UnknownFieldError(InvariantViolationError):
    """An update named a state field that the schema does not declare."""


class UnknownNodeError(InvariantViolationError):
    """A router returned a name that is neither a registered node nor the terminal marker."""


class GraphConfigurationError(InvariantViolationError):
    """The graph definition violates the one-outgoing-edge-per-node rule or names unknown nodes."""


class SafetyCeilingExceededError(InvariantViolationError):
    """A single invocation executed more nodes than the configured recursion limit."""
