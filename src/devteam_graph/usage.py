from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .models import UsageLedger


@dataclass
class AgentUsage:
    agent: str
    calls: int = 0
    input_units: int = 0
    output_units: int = 0
    cost: float = 0.0


def summarize_usage(ledger: UsageLedger | Mapping[str, Any]) -> list[AgentUsage]:
    """Per-agent totals in order of each agent's first call."""
    if not isinstance(ledger, UsageLedger):
        ledger = UsageLedger.model_validate(ledger)
    by_agent: dict[str, AgentUsage] = {}
    for record in ledger.calls:
        entry = by_agent.setdefault(record.agent, AgentUsage(agent=record.agent))
        entry.calls += 1
        entry.input_units += record.input_units
        entry.output_units += record.output_units
        entry.cost += record.cost
    return list(by_agent.values())


def format_usage(ledger: UsageLedger | Mapping[str, Any], budget: float | None = None) -> str:
    if not isinstance(ledger, UsageLedger):
        ledger = UsageLedger.model_validate(ledger)
    lines = [f"{'agent':<22} {'calls':>5} {'input':>9} {'output':>9} {'cost':>10}"]
    for entry in summarize_usage(ledger):
        lines.append(
            f"{entry.agent:<22} {entry.calls:>5} {entry.input_units:>9} {entry.output_units:>9} ${entry.cost:>9.4f}"
        )
    total = (
        f"{'total':<22} {len(ledger.calls):>5} {ledger.total_input_units:>9} "
        f"{ledger.total_output_units:>9} ${ledger.estimated_cost:>9.4f}"
    )
    lines.append(total)
    if budget is not None:
        lines.append(f"budget ${budget:.2f}, remaining ${max(budget - ledger.estimated_cost, 0.0):.4f}")
    return "\n".join(lines)
