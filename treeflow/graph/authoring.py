"""Graph construction API: every mutation of Steps, content and edge candidates goes through here."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from treeflow.db import repository
from treeflow.db.models import (
    DEFAULT_IMPORTANCE,
    FewShotType,
    InputType,
    Step,
    StepConnection,
    StepFewShotExample,
    StepInput,
    StepOutput,
    StepQuestion,
    TreeFlow,
)
from treeflow.settings import get_settings
from treeflow.utils.slug import unique_slug

from .connections import ConnectionService, same_step, same_tree_flow
from .errors import CrossTreeFlowReference, EntryPointError, StepNotFoundError, TreeFlowValidationError
from .validation import TreeFlowValidator, ValidationReport

logger = logging.getLogger(__name__)


def _next_order(items: Sequence[StepOutput | StepInput | StepQuestion | Step]) -> int:
    return max((item.view_order or 0 for item in items), default=0) + 1


class TreeFlowEditor:
    """Authoring service keeping the TreeFlow aggregate consistent.

    Changes are flushed, never committed; the caller owns the transaction.
    """

    def __init__(self, session: Session, connections: ConnectionService | None = None) -> None:
        self.session = session
        self.connections = connections or ConnectionService(session)

    # --- TreeFlow

    def create_tree_flow(
        self,
        *,
        name: str,
        version: str | None = None,
        description: str | None = None,
        organization_id: UUID | None = None,
        created_by: str | None = None,
        slug: str | None = None,
    ) -> TreeFlow:
        tree_flow = TreeFlow(
            name=name,
            slug=unique_slug(slug or name, repository.tree_flow_slugs(self.session)),
            version=version or get_settings().default_flow_version,
            description=description,
            organization_id=organization_id,
            created_by=created_by,
            revision=1,
            is_active=False,
        )
        self.session.add(tree_flow)
        self.session.flush()
        logger.info("Created TreeFlow %s (%s)", tree_flow.id, tree_flow)
        return tree_flow

    def delete_tree_flow(self, tree_flow: TreeFlow) -> None:
        """Delete a TreeFlow; its Steps, content, edges and wires go with it."""
        tree_flow_id = tree_flow.id
        self.session.delete(tree_flow)
        self.session.flush()
        logger.info("Deleted TreeFlow %s", tree_flow_id)

    def activate(self, tree_flow: TreeFlow) -> ValidationReport:
        """Validate and activate; broken flows are caught before any agent session starts."""
        report = TreeFlowValidator().validate(tree_flow)
        if not report.is_valid:
            logger.warning(
                "Refusing to activate TreeFlow %s: %s", tree_flow.id, "; ".join(report.errors)
            )
            raise TreeFlowValidationError(report)
        tree_flow.is_active = True
        self.session.flush()
        for warning in report.warnings:
            logger.info("TreeFlow %s activated with warning: %s", tree_flow.id, warning)
        return report

    def deactivate(self, tree_flow: TreeFlow) -> None:
        tree_flow.is_active = False
        self.session.flush()

    # --- Steps

    def add_step(
        self,
        tree_flow: TreeFlow,
        *,
        name: str,
        first: bool = False,
        objective: str | None = None,
        prompt: str | None = None,
        slug: str | None = None,
    ) -> Step:
        if first:
            current = tree_flow.get_first_step()
            if current is not None:
                raise EntryPointError(
                    f"TreeFlow '{tree_flow.name}' already starts at step '{current.name}'"
                )

        step = Step(
            name=name,
            slug=unique_slug(slug or name, [s.slug for s in tree_flow.steps]),
            first=first,
            objective=objective,
            prompt=prompt,
            view_order=_next_order(tree_flow.steps),
        )
        tree_flow.add_step(step)
        tree_flow.bump_revision()
        self.session.flush()
        logger.debug("Added step %s to TreeFlow %s", step.slug, tree_flow.id)
        return step

    def set_first_step(self, step: Step) -> Step:
        """Move the entry-point designation of the Step's TreeFlow onto ``step``."""
        tree_flow = step.tree_flow
        current = tree_flow.get_first_step()
        if current is step:
            return step
        if current is not None:
            current.first = False
            # Clear the old flag first so the single-first index never sees two
            self.session.flush()
        step.first = True
        tree_flow.bump_revision()
        self.session.flush()
        logger.info("TreeFlow %s now starts at step %s", tree_flow.id, step.slug)
        return step

    def remove_step(self, step: Step, *, new_first: Step | None = None) -> None:
        """Delete ``step`` with its content, edge candidates and wires.

        Other Steps' outputs and inputs that referenced it keep existing with
        their destination/source cleared. The only first Step can be removed
        only when it is the last Step or when ``new_first`` is designated;
        ``new_first`` is rejected when ``step`` is not the entry point.
        """
        tree_flow = step.tree_flow
        if new_first is not None:
            if not step.first:
                raise EntryPointError(
                    f"Step '{step.name}' is not the entry point of '{tree_flow.name}'; "
                    "use set_first_step to move it"
                )
            if same_step(new_first, step):
                raise EntryPointError("A removed step cannot be the new first step")
            if new_first not in tree_flow.steps:
                raise StepNotFoundError(
                    f"Step '{new_first.name}' does not belong to TreeFlow '{tree_flow.name}'"
                )
        if step.first and new_first is None and len(tree_flow.steps) > 1:
            raise EntryPointError(
                f"Step '{step.name}' is the entry point of '{tree_flow.name}'; "
                "designate a new first step before removing it"
            )

        self.connections.disconnect_step(step)
        for output in list(step.incoming_outputs):
            output.destination_step = None
        for step_input in list(step.outgoing_inputs):
            step_input.source_step = None

        tree_flow.remove_step(step)
        tree_flow.bump_revision()
        self.session.flush()
        logger.info("Removed step %s from TreeFlow %s", step.slug, tree_flow.id)

        if new_first is not None:
            self.set_first_step(new_first)

    def update_step(
        self,
        step: Step,
        *,
        name: str | None = None,
        objective: str | None = None,
        prompt: str | None = None,
    ) -> Step:
        if name is not None and name != step.name:
            step.name = name
            siblings = [s.slug for s in step.tree_flow.steps if s is not step]
            step.slug = unique_slug(name, siblings)
        if objective is not None:
            step.objective = objective
        if prompt is not None:
            step.prompt = prompt
        step.tree_flow.bump_revision()
        self.session.flush()
        return step

    # --- Guidance content

    def add_question(
        self,
        step: Step,
        *,
        name: str,
        prompt: str | None = None,
        objective: str | None = None,
        importance: int = DEFAULT_IMPORTANCE,
        slug: str | None = None,
    ) -> StepQuestion:
        question = StepQuestion(
            name=name,
            slug=unique_slug(slug or name, [q.slug for q in step.questions]),
            prompt=prompt,
            objective=objective,
            importance=importance,
            view_order=_next_order(step.questions),
        )
        step.questions.append(question)
        step.tree_flow.bump_revision()
        self.session.flush()
        return question

    def remove_question(self, question: StepQuestion) -> None:
        step = question.step
        step.questions.remove(question)
        step.tree_flow.bump_revision()
        self.session.flush()

    def add_example(
        self,
        question: StepQuestion,
        *,
        name: str,
        type: FewShotType = FewShotType.POSITIVE,
        prompt: str | None = None,
        description: str | None = None,
        slug: str | None = None,
    ) -> StepFewShotExample:
        example = StepFewShotExample(
            name=name,
            slug=unique_slug(slug or name, [e.slug for e in question.examples]),
            type=FewShotType(type),
            prompt=prompt,
            description=description,
        )
        question.examples.append(example)
        question.step.tree_flow.bump_revision()
        self.session.flush()
        return example

    def remove_example(self, example: StepFewShotExample) -> None:
        question = example.question
        question.examples.remove(example)
        question.step.tree_flow.bump_revision()
        self.session.flush()

    # --- Edge candidates

    def add_output(
        self,
        step: Step,
        *,
        name: str,
        destination: Step | None = None,
        conditional: str | None = None,
        description: str | None = None,
        slug: str | None = None,
    ) -> StepOutput:
        if destination is not None:
            self._require_same_tree_flow(step, destination, f"output '{name}'")
        output = StepOutput(
            name=name,
            slug=unique_slug(slug or name, [o.slug for o in step.outputs]),
            destination_step=destination,
            conditional=conditional,
            description=description,
            view_order=_next_order(step.outputs),
        )
        step.outputs.append(output)
        step.tree_flow.bump_revision()
        self.session.flush()
        return output

    def set_output_destination(self, output: StepOutput, destination: Step | None) -> StepOutput:
        if destination is not None:
            self._require_same_tree_flow(output.step, destination, f"output '{output.name}'")
        output.destination_step = destination
        output.step.tree_flow.bump_revision()
        self.session.flush()
        return output

    def set_output_conditional(self, output: StepOutput, conditional: str | None) -> StepOutput:
        output.conditional = conditional
        output.step.tree_flow.bump_revision()
        self.session.flush()
        return output

    def reorder_outputs(self, step: Step, outputs: Sequence[StepOutput]) -> list[StepOutput]:
        """Assign explicit evaluation order; ``outputs`` must list every output of ``step``."""
        if len(outputs) != len(step.outputs) or any(o not in step.outputs for o in outputs):
            raise ValueError(f"Reorder must list each output of step '{step.name}' exactly once")
        if len({id(o) for o in outputs}) != len(outputs):
            raise ValueError("Reorder lists an output more than once")
        for position, output in enumerate(outputs, start=1):
            output.view_order = position
        step.outputs.sort(key=lambda o: o.view_order)
        step.tree_flow.bump_revision()
        self.session.flush()
        return list(step.outputs)

    def remove_output(self, output: StepOutput) -> None:
        step = output.step
        if output.connection is not None:
            self.connections.disconnect(output.connection)
        step.outputs.remove(output)
        step.tree_flow.bump_revision()
        self.session.flush()

    def add_input(
        self,
        step: Step,
        *,
        name: str,
        type: InputType = InputType.ANY,
        source: Step | None = None,
        prompt: str | None = None,
        slug: str | None = None,
    ) -> StepInput:
        if source is not None:
            self._require_same_tree_flow(step, source, f"input '{name}'")
        step_input = StepInput(
            name=name,
            slug=unique_slug(slug or name, [i.slug for i in step.inputs]),
            type=InputType(type),
            source_step=source,
            prompt=prompt,
            view_order=_next_order(step.inputs),
        )
        step.inputs.append(step_input)
        step.tree_flow.bump_revision()
        self.session.flush()
        return step_input

    def set_input_source(self, step_input: StepInput, source: Step | None) -> StepInput:
        if source is not None:
            self._require_same_tree_flow(step_input.step, source, f"input '{step_input.name}'")
        step_input.source_step = source
        step_input.step.tree_flow.bump_revision()
        self.session.flush()
        return step_input

    def set_input_type(self, step_input: StepInput, type: InputType) -> StepInput:
        step_input.type = InputType(type)
        step_input.step.tree_flow.bump_revision()
        self.session.flush()
        return step_input

    def remove_input(self, step_input: StepInput) -> None:
        step = step_input.step
        for connection in list(step_input.connections):
            self.connections.disconnect(connection)
        step.inputs.remove(step_input)
        step.tree_flow.bump_revision()
        self.session.flush()

    # --- Wiring

    def connect(self, output: StepOutput, step_input: StepInput) -> StepConnection:
        return self.connections.connect(output, step_input)

    def disconnect(self, connection: StepConnection) -> None:
        self.connections.disconnect(connection)

    @staticmethod
    def _require_same_tree_flow(owner: Step, referenced: Step, what: str) -> None:
        if not same_tree_flow(owner, referenced):
            raise CrossTreeFlowReference(
                f"Step '{referenced.name}' referenced by {what} of step '{owner.name}' "
                "belongs to another TreeFlow"
            )
