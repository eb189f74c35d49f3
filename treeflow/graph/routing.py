"""Routing resolution over a TreeFlow.

Given the Step that just ran and the agent's completion verdict for it, the
router picks the next Step:

1. Outputs are enumerated in ``view_order`` (ties keep creation order).
2. Each conditional is handed to a ``ConditionEvaluator``; an empty
   conditional is an unconditional fallback. The first match wins.
3. A matched output without a StepConnection ends the path, even when its
   ``destination_step`` hint is set.
4. A matched output with a connection leads to ``connection.target_input.step``
   if the target input's completion guard accepts the verdict. Otherwise the
   output is recorded as guard-rejected and evaluation continues with the next
   output.

Terminal results are reported through ``RoutingOutcome``; routing never raises
for a well-formed flow.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from treeflow.db.models import (
    CompletionVerdict,
    Step,
    StepConnection,
    StepInput,
    StepOutput,
    TreeFlow,
)

from .errors import EntryPointError

logger = logging.getLogger(__name__)


class RoutingStatus(str, Enum):
    ADVANCED = "advanced"
    NO_MATCH = "no_match"
    UNCONNECTED = "unconnected"
    GUARD_REJECTED = "guard_rejected"


@dataclass(slots=True)
class RoutingOutcome:
    """Result of one routing decision."""

    status: RoutingStatus
    step: Step
    verdict: CompletionVerdict
    selected_output: StepOutput | None = None
    connection: StepConnection | None = None
    next_step: Step | None = None
    # Outputs whose condition matched but whose target input refused the verdict
    rejected_outputs: list[StepOutput] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status != RoutingStatus.ADVANCED

    @property
    def target_input(self) -> StepInput | None:
        return self.connection.target_input if self.connection is not None else None


class ConditionEvaluator(Protocol):
    """Decides whether an output's free-text conditional holds for the agent state."""

    def evaluate(self, output: StepOutput, state: Any) -> bool: ...


class MappingConditionEvaluator:
    """Read truth values the agent already produced, keyed by conditional text.

    The output slug is accepted as a key too. A missing key means the
    condition does not hold.
    """

    def evaluate(self, output: StepOutput, state: Any) -> bool:
        if not isinstance(state, Mapping):
            return False
        conditional = (output.conditional or "").strip()
        if conditional in state:
            return bool(state[conditional])
        if output.slug and output.slug in state:
            return bool(state[output.slug])
        return False


def ordered_outputs(step: Step) -> list[StepOutput]:
    """Outputs in evaluation order; ``sorted`` is stable so ties keep list order."""
    return sorted(step.outputs, key=lambda output: output.view_order or 0)


def _coerce_verdict(verdict: CompletionVerdict | str) -> CompletionVerdict:
    try:
        return CompletionVerdict(verdict)
    except ValueError:
        # Anything that is neither success nor failure counts as partial
        return CompletionVerdict.PARTIAL


class StepRouter:
    def __init__(self, evaluator: ConditionEvaluator | None = None) -> None:
        self.evaluator = evaluator or MappingConditionEvaluator()

    def start(self, tree_flow: TreeFlow) -> Step:
        """Return the entry Step, failing when the TreeFlow has none or several."""
        first_steps = tree_flow.first_steps()
        if not first_steps:
            raise EntryPointError(f"TreeFlow '{tree_flow.name}' has no first step")
        if len(first_steps) > 1:
            names = ", ".join(step.name for step in first_steps)
            raise EntryPointError(f"TreeFlow '{tree_flow.name}' has several first steps: {names}")
        return first_steps[0]

    def matches(self, output: StepOutput, state: Any) -> bool:
        if not output.has_conditional:
            return True
        return bool(self.evaluator.evaluate(output, state))

    def route(
        self,
        step: Step,
        verdict: CompletionVerdict | str,
        state: Any = None,
    ) -> RoutingOutcome:
        verdict = _coerce_verdict(verdict)
        rejected: list[StepOutput] = []

        for output in ordered_outputs(step):
            if not self.matches(output, state):
                continue

            connection = output.connection
            if connection is None:
                logger.debug("Output %s of step %s matched but is not wired", output.name, step.name)
                return RoutingOutcome(
                    status=RoutingStatus.UNCONNECTED,
                    step=step,
                    verdict=verdict,
                    selected_output=output,
                    rejected_outputs=rejected,
                )

            target_input = connection.target_input
            if not target_input.accepts(verdict):
                logger.debug(
                    "Input %s (%s) refused verdict %s from step %s",
                    target_input.name,
                    target_input.type.value,
                    verdict.value,
                    step.name,
                )
                rejected.append(output)
                continue

            next_step = target_input.step
            logger.info(
                "Routed %s -> %s via output %s (verdict=%s)",
                step.name,
                next_step.name,
                output.name,
                verdict.value,
            )
            return RoutingOutcome(
                status=RoutingStatus.ADVANCED,
                step=step,
                verdict=verdict,
                selected_output=output,
                connection=connection,
                next_step=next_step,
                rejected_outputs=rejected,
            )

        status = RoutingStatus.GUARD_REJECTED if rejected else RoutingStatus.NO_MATCH
        logger.info("Step %s ends the path (%s, verdict=%s)", step.name, status.value, verdict.value)
        return RoutingOutcome(
            status=status,
            step=step,
            verdict=verdict,
            rejected_outputs=rejected,
        )
