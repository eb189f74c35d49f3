"""JSON structure of a TreeFlow, keyed by slugs and ordered by canvas flow."""

from __future__ import annotations

import logging
from collections import deque
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from treeflow.db.models import (
    DEFAULT_IMPORTANCE,
    FewShotType,
    InputType,
    Step,
    StepInput,
    StepOutput,
    TreeFlow,
)

from .authoring import TreeFlowEditor
from .errors import StepNotFoundError

logger = logging.getLogger(__name__)


class ConnectTarget(BaseModel):
    step: str
    input: str


class ExampleDocument(BaseModel):
    name: str
    prompt: str | None = None
    description: str | None = None


class QuestionDocument(BaseModel):
    name: str
    objective: str | None = None
    prompt: str | None = None
    importance: int = DEFAULT_IMPORTANCE
    few_shot_positive: list[ExampleDocument] = Field(default_factory=list)
    few_shot_negative: list[ExampleDocument] = Field(default_factory=list)


class InputDocument(BaseModel):
    name: str
    type: InputType = InputType.ANY
    prompt: str | None = None
    source_step: str | None = None


class OutputDocument(BaseModel):
    name: str
    description: str | None = None
    conditional: str | None = None
    destination_step: str | None = None
    connect_to: ConnectTarget | None = None


class StepDocument(BaseModel):
    name: str
    order: int
    first: bool = False
    objective: str | None = None
    prompt: str | None = None
    questions: dict[str, QuestionDocument] = Field(default_factory=dict)
    inputs: dict[str, InputDocument] = Field(default_factory=dict)
    # Insertion order is evaluation order
    outputs: dict[str, OutputDocument] = Field(default_factory=dict)


class TreeFlowDocument(BaseModel):
    slug: str
    name: str
    version: str
    description: str | None = None
    steps: dict[str, StepDocument] = Field(default_factory=dict)


def ordered_steps(tree_flow: TreeFlow) -> list[Step]:
    """Steps in canvas order: BFS from the first step over connections, then the rest.

    Without a first step the stored ``view_order`` is used as is.
    """
    first = tree_flow.get_first_step()
    if first is None:
        return list(tree_flow.steps)

    ordered: list[Step] = []
    visited: set[int] = set()
    queue: deque[Step] = deque([first])
    while queue:
        step = queue.popleft()
        if id(step) in visited:
            continue
        visited.add(id(step))
        ordered.append(step)
        for output in sorted(step.outputs, key=lambda o: o.view_order or 0):
            if output.connection is None:
                continue
            target = output.connection.target_input.step
            if target is not None and id(target) not in visited and target in tree_flow.steps:
                queue.append(target)

    ordered.extend(step for step in tree_flow.steps if id(step) not in visited)
    return ordered


def _input_key(step_input: StepInput) -> str:
    return step_input.slug or f"input-{step_input.id}"


def _output_key(output: StepOutput) -> str:
    return output.slug or f"output-{output.id}"


def export_tree_flow(tree_flow: TreeFlow) -> TreeFlowDocument:
    steps: dict[str, StepDocument] = {}
    for order, step in enumerate(ordered_steps(tree_flow), start=1):
        questions = {
            question.slug or f"question-{question.id}": QuestionDocument(
                name=question.name,
                objective=question.objective,
                prompt=question.prompt,
                importance=question.importance,
                few_shot_positive=[
                    ExampleDocument(name=e.name, prompt=e.prompt, description=e.description)
                    for e in question.positive_examples
                ],
                few_shot_negative=[
                    ExampleDocument(name=e.name, prompt=e.prompt, description=e.description)
                    for e in question.negative_examples
                ],
            )
            for question in step.questions
        }
        inputs = {
            _input_key(step_input): InputDocument(
                name=step_input.name,
                type=step_input.type,
                prompt=step_input.prompt,
                source_step=step_input.source_step.slug if step_input.source_step else None,
            )
            for step_input in step.inputs
        }
        outputs: dict[str, OutputDocument] = {}
        for output in sorted(step.outputs, key=lambda o: o.view_order or 0):
            connect_to = None
            if output.connection is not None:
                target_input = output.connection.target_input
                connect_to = ConnectTarget(
                    step=target_input.step.slug or "", input=_input_key(target_input)
                )
            outputs[_output_key(output)] = OutputDocument(
                name=output.name,
                description=output.description,
                conditional=output.conditional,
                destination_step=output.destination_step.slug if output.destination_step else None,
                connect_to=connect_to,
            )

        steps[step.slug or f"step-{step.id}"] = StepDocument(
            name=step.name,
            order=order,
            first=step.first,
            objective=step.objective,
            prompt=step.prompt,
            questions=questions,
            inputs=inputs,
            outputs=outputs,
        )

    return TreeFlowDocument(
        slug=tree_flow.slug or f"tree-flow-{tree_flow.id}",
        name=tree_flow.name,
        version=tree_flow.version,
        description=tree_flow.description,
        steps=steps,
    )


def import_tree_flow(
    session: Session,
    document: TreeFlowDocument,
    *,
    organization_id: UUID | None = None,
    created_by: str | None = None,
) -> TreeFlow:
    """Rebuild a TreeFlow from ``document`` through the authoring API.

    Steps come first, then their content and edge candidates, then the wires,
    so every reference resolves and every wiring invariant is checked again.
    """
    editor = TreeFlowEditor(session)
    tree_flow = editor.create_tree_flow(
        name=document.name,
        slug=document.slug,
        version=document.version,
        description=document.description,
        organization_id=organization_id,
        created_by=created_by,
    )

    steps: dict[str, Step] = {}
    for slug, step_doc in sorted(document.steps.items(), key=lambda item: item[1].order):
        steps[slug] = editor.add_step(
            tree_flow,
            name=step_doc.name,
            slug=slug,
            first=step_doc.first,
            objective=step_doc.objective,
            prompt=step_doc.prompt,
        )

    def resolve(slug: str | None, what: str) -> Step | None:
        if slug is None:
            return None
        if slug not in steps:
            raise StepNotFoundError(f"{what} references unknown step '{slug}'")
        return steps[slug]

    inputs: dict[tuple[str, str], StepInput] = {}
    outputs: list[tuple[StepOutput, ConnectTarget]] = []
    for slug, step_doc in document.steps.items():
        step = steps[slug]
        for question_slug, question_doc in step_doc.questions.items():
            question = editor.add_question(
                step,
                name=question_doc.name,
                slug=question_slug,
                objective=question_doc.objective,
                prompt=question_doc.prompt,
                importance=question_doc.importance,
            )
            for example_type, examples in (
                (FewShotType.POSITIVE, question_doc.few_shot_positive),
                (FewShotType.NEGATIVE, question_doc.few_shot_negative),
            ):
                for example in examples:
                    editor.add_example(
                        question,
                        name=example.name,
                        type=example_type,
                        prompt=example.prompt,
                        description=example.description,
                    )

        for input_slug, input_doc in step_doc.inputs.items():
            inputs[(slug, input_slug)] = editor.add_input(
                step,
                name=input_doc.name,
                slug=input_slug,
                type=input_doc.type,
                prompt=input_doc.prompt,
                source=resolve(input_doc.source_step, f"Input '{input_slug}' of '{slug}'"),
            )

        for output_slug, output_doc in step_doc.outputs.items():
            output = editor.add_output(
                step,
                name=output_doc.name,
                slug=output_slug,
                description=output_doc.description,
                conditional=output_doc.conditional,
                destination=resolve(
                    output_doc.destination_step, f"Output '{output_slug}' of '{slug}'"
                ),
            )
            if output_doc.connect_to is not None:
                outputs.append((output, output_doc.connect_to))

    for output, target in outputs:
        resolve(target.step, f"Connection from output '{output.slug}'")
        target_input = inputs.get((target.step, target.input))
        if target_input is None:
            raise StepNotFoundError(
                f"Connection from output '{output.slug}' references unknown input "
                f"'{target.input}' of step '{target.step}'"
            )
        editor.connect(output, target_input)

    logger.info(
        "Imported TreeFlow %s with %d steps and %d connections",
        tree_flow.id,
        len(steps),
        len(outputs),
    )
    return tree_flow
