"""Per-session progress through a TreeFlow.

``FlowProgress`` is the template an agent session fills in while it walks the
graph: answers per question, the output taken at each step, completion
timestamps. It is plain data so callers can persist it wherever the session
lives; ``to_dict``/``from_dict`` give its JSON shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from treeflow.core.logging import bind_session_id
from treeflow.db.models import CompletionVerdict, TreeFlow

from .errors import QuestionNotFoundError, StepNotFoundError
from .export import ordered_steps
from .routing import RoutingOutcome, StepRouter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepProgress:
    """Progress of a single step."""

    order: int
    completed: bool = False
    timestamp: datetime | None = None
    selected_output: str | None = None
    verdict: CompletionVerdict | None = None
    # Question slug -> answer; empty string means not answered yet
    answers: dict[str, str] = field(default_factory=dict)
    # Output slugs the step declares, in evaluation order
    outputs: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return not self.outputs


@dataclass(slots=True)
class FlowProgress:
    tree_flow_slug: str
    current_step: str | None = None
    steps: dict[str, StepProgress] = field(default_factory=dict)
    session_id: str | None = None

    @classmethod
    def from_tree_flow(cls, tree_flow: TreeFlow, *, session_id: str | None = None) -> FlowProgress:
        """Build an empty template positioned at the first step."""
        steps: dict[str, StepProgress] = {}
        for order, step in enumerate(ordered_steps(tree_flow), start=1):
            steps[step.slug or str(step.id)] = StepProgress(
                order=order,
                answers={q.slug or str(q.id): "" for q in step.questions},
                outputs=[
                    o.slug or str(o.id) for o in sorted(step.outputs, key=lambda o: o.view_order)
                ],
            )
        first = tree_flow.get_first_step()
        return cls(
            tree_flow_slug=tree_flow.slug or str(tree_flow.id),
            current_step=first.slug if first is not None else None,
            steps=steps,
            session_id=session_id,
        )

    def _step(self, step_slug: str) -> StepProgress:
        try:
            return self.steps[step_slug]
        except KeyError:
            raise StepNotFoundError(
                f"Step '{step_slug}' is not part of TreeFlow '{self.tree_flow_slug}'"
            ) from None

    def record_answer(self, step_slug: str, question_slug: str, answer: str) -> None:
        step = self._step(step_slug)
        if question_slug not in step.answers:
            raise QuestionNotFoundError(f"Step '{step_slug}' has no question '{question_slug}'")
        step.answers[question_slug] = answer

    def is_step_complete(self, step_slug: str) -> bool:
        """A step is complete once every one of its questions has an answer."""
        step = self.steps.get(step_slug)
        if step is None:
            return False
        return all(answer for answer in step.answers.values())

    def next_question(self) -> str | None:
        """Slug of the first unanswered question of the current step."""
        if self.current_step is None or self.current_step not in self.steps:
            return None
        for question_slug, answer in self.steps[self.current_step].answers.items():
            if not answer:
                return question_slug
        return None

    def all_answers(self) -> dict[str, str]:
        return {
            f"{step_slug}.{question_slug}": answer
            for step_slug, step in self.steps.items()
            for question_slug, answer in step.answers.items()
            if answer
        }

    def complete_step(
        self,
        step_slug: str,
        output_slug: str | None,
        next_step_slug: str | None,
        verdict: CompletionVerdict | None = None,
    ) -> None:
        step = self._step(step_slug)
        if next_step_slug is not None:
            self._step(next_step_slug)
        step.completed = True
        step.timestamp = datetime.now(timezone.utc)
        step.selected_output = output_slug
        step.verdict = verdict
        self.current_step = next_step_slug

    def progress_percent(self) -> float:
        if not self.steps:
            return 0.0
        completed = sum(1 for step in self.steps.values() if step.completed)
        return round(completed / len(self.steps) * 100, 2)

    @property
    def is_complete(self) -> bool:
        """No current step, or the current step has no way out."""
        if self.current_step is None:
            return True
        step = self.steps.get(self.current_step)
        return step is None or step.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "tree_flow": self.tree_flow_slug,
            "current_step": self.current_step,
            "session_id": self.session_id,
            "steps": {
                slug: {
                    "order": step.order,
                    "completed": step.completed,
                    "timestamp": step.timestamp.isoformat() if step.timestamp else None,
                    "selected_output": step.selected_output,
                    "verdict": step.verdict.value if step.verdict else None,
                    "answers": dict(step.answers),
                    "outputs": list(step.outputs),
                }
                for slug, step in self.steps.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowProgress:
        progress = cls(
            tree_flow_slug=data["tree_flow"],
            current_step=data.get("current_step"),
            session_id=data.get("session_id"),
        )
        for slug, step_data in data.get("steps", {}).items():
            step = StepProgress(
                order=step_data["order"],
                completed=step_data.get("completed", False),
                selected_output=step_data.get("selected_output"),
                answers=dict(step_data.get("answers", {})),
                outputs=list(step_data.get("outputs", [])),
            )
            if step_data.get("timestamp"):
                step.timestamp = datetime.fromisoformat(step_data["timestamp"])
            if step_data.get("verdict"):
                step.verdict = CompletionVerdict(step_data["verdict"])
            progress.steps[slug] = step
        return progress


class FlowNavigator:
    """Advance a FlowProgress through the router, one step at a time."""

    def __init__(self, tree_flow: TreeFlow, router: StepRouter | None = None) -> None:
        self.tree_flow = tree_flow
        self.router = router or StepRouter()

    def advance(
        self,
        progress: FlowProgress,
        verdict: CompletionVerdict | str,
        state: Any = None,
    ) -> RoutingOutcome:
        if progress.current_step is None:
            raise StepNotFoundError(
                f"Progress through '{progress.tree_flow_slug}' has no current step"
            )
        step = self.tree_flow.step_by_slug(progress.current_step)
        if step is None:
            raise StepNotFoundError(
                f"Step '{progress.current_step}' no longer exists in '{self.tree_flow.name}'"
            )

        with bind_session_id(progress.session_id):
            outcome = self.router.route(step, verdict, state)
            selected = outcome.selected_output
            progress.complete_step(
                progress.current_step,
                selected.slug if selected is not None else None,
                outcome.next_step.slug if outcome.next_step is not None else None,
                outcome.verdict,
            )
            logger.info(
                "Progress through %s: %s%% (%s)",
                progress.tree_flow_slug,
                progress.progress_percent(),
                outcome.status.value,
            )
        return outcome
