"""Budgeted call adapter: budget guard, retry policy, and exact usage accounting for one delegated call."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from .errors import BudgetExceededError, CallFailedError, StructuredOutputError
from .llm import Completion, ReasoningClient, build_prompt, extract_json_payload, normalize_structured_output
from .models import CallRecord, UsageDelta
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSpec:
    agent: str
    instruction: str
    context: str
    schema: type[BaseModel] | None = None


@dataclass
class CallResult:
    result: dict[str, Any]
    usage_delta: UsageDelta
    attempts: int


def estimate_units(text: str) -> int:
    """Rough unit count used when the service does not report usage (~4 characters per unit)."""
    return math.ceil(len(text) / 4)


class BudgetedCallAdapter:
    """Wraps a :class:`ReasoningClient` with a pre-call budget guard and bounded retries.

    Structural-output failures are retried immediately; channel failures are retried after
    ``backoff_seconds * 2 ** attempt``. Budget refusals are raised before any call is issued
    and are never retried. Only the successful attempt's usage is reported, as one delta.
    """

    def __init__(
        self,
        client: ReasoningClient,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        input_cost_per_million: float = 0.15,
        output_cost_per_million: float = 0.60,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {max_attempts}")
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.input_cost_per_million = input_cost_per_million
        self.output_cost_per_million = output_cost_per_million
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        client: ReasoningClient,
        settings: RuntimeSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "BudgetedCallAdapter":
        return cls(
            client,
            max_attempts=settings.max_call_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            input_cost_per_million=settings.input_cost_per_million,
            output_cost_per_million=settings.output_cost_per_million,
            sleep=sleep,
        )

    def estimate_cost(self, input_units: int, output_units: int) -> float:
        return (input_units / 1_000_000) * self.input_cost_per_million + (
            output_units / 1_000_000
        ) * self.output_cost_per_million

    def _usage_delta(self, call_spec: CallSpec, completion: Completion) -> UsageDelta:
        input_units = completion.input_units
        if not input_units:
            input_units = estimate_units(build_prompt(call_spec.instruction, call_spec.context))
        output_units = completion.output_units
        if not output_units:
            output_units = estimate_units(completion.text)
        cost = self.estimate_cost(input_units, output_units)
        record = CallRecord(agent=call_spec.agent, input_units=input_units, output_units=output_units, cost=cost)
        return UsageDelta(
            added_input_units=input_units,
            added_output_units=output_units,
            added_cost=cost,
            new_call_records=[record],
        )

    @staticmethod
    def _interpret(text: str, schema: type[BaseModel] | None) -> dict[str, Any]:
        payload = extract_json_payload(text)
        if schema is None:
            return payload
        return normalize_structured_output(payload=payload, schema=schema)

    def invoke(self, call_spec: CallSpec, current_cost: float, budget: float) -> CallResult:
        """Issue ``call_spec`` unless the budget is spent, retrying transient failures.

        Raises:
            BudgetExceededError: If ``current_cost >= budget``. No call is issued.
            CallFailedError: After ``max_attempts`` failed attempts; ``reason`` names the
                category of the last failure.
        """
        if current_cost >= budget:
            logger.error(
                "[%s] refusing call: cumulative cost $%.4f >= budget $%.4f",
                call_spec.agent,
                current_cost,
                budget,
            )
            raise BudgetExceededError(current_cost, budget)

        last_error: BaseException | None = None
        reason = CallFailedError.CHANNEL
        for attempt in range(1, self.max_attempts + 1):
            try:
                completion = self.client.complete(call_spec.instruction, call_spec.context)
                result = self._interpret(completion.text, call_spec.schema)
            except BudgetExceededError:
                raise
            except StructuredOutputError as exc:
                last_error = exc
                reason = CallFailedError.STRUCTURED_OUTPUT
                logger.warning(
                    "[%s] structured output invalid (attempt %d/%d): %s",
                    call_spec.agent,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                continue
            except Exception as exc:  # noqa: BLE001 - every other failure is a channel fault.
                last_error = exc
                reason = CallFailedError.CHANNEL
                if attempt < self.max_attempts:
                    wait = self.backoff_seconds * 2**attempt
                    logger.warning(
                        "[%s] attempt %d/%d failed: %s. Retrying in %.1fs",
                        call_spec.agent,
                        attempt,
                        self.max_attempts,
                        exc,
                        wait,
                    )
                    self._sleep(wait)
                continue

            delta = self._usage_delta(call_spec, completion)
            logger.info(
                "[%s] call succeeded on attempt %d: %d in / %d out units, $%.6f",
                call_spec.agent,
                attempt,
                delta.added_input_units,
                delta.added_output_units,
                delta.added_cost,
            )
            return CallResult(result=result, usage_delta=delta, attempts=attempt)

        raise CallFailedError(
            agent=call_spec.agent,
            attempts=self.max_attempts,
            reason=reason,
            last_error=last_error,
        )

    def invoke_for_state(self, call_spec: CallSpec, state: Mapping[str, Any]) -> CallResult:
        """Invoke with the cumulative cost and budget read from a state snapshot."""
        ledger = state.get("token_usage") or {}
        current_cost = float(ledger.get("estimated_cost", 0.0))
        budget = float(state.get("token_budget", 0.0))
        return self.invoke(call_spec, current_cost, budget)
