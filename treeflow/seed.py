"""Demo data: the "Onboarding v1" TreeFlow.

    A (first) --success [user confirmed]--> B (any) --next--> C (fully completed)
    A --retry [user declined] (not wired)

Used by ``treeflow seed-demo`` and by the test suite.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from treeflow.db.models import FewShotType, InputType, TreeFlow
from treeflow.graph.authoring import TreeFlowEditor

logger = logging.getLogger(__name__)

ONBOARDING_NAME = "Onboarding v1"
CONFIRMED = "user confirmed"
DECLINED = "user declined"


def seed_onboarding_flow(session: Session, *, created_by: str | None = "seed") -> TreeFlow:
    editor = TreeFlowEditor(session)
    tree_flow = editor.create_tree_flow(
        name=ONBOARDING_NAME,
        description="Welcome a new contact, collect their goal, then wrap up.",
        created_by=created_by,
    )

    step_a = editor.add_step(
        tree_flow,
        name="A",
        first=True,
        objective="Greet the contact and confirm they want to continue",
        prompt="Say hello and ask whether now is a good time to talk.",
    )
    step_b = editor.add_step(
        tree_flow,
        name="B",
        objective="Collect the contact's main goal",
        prompt="Ask what the contact wants to achieve.",
    )
    step_c = editor.add_step(
        tree_flow,
        name="C",
        objective="Close the onboarding",
        prompt="Thank the contact and summarise next steps.",
    )

    question = editor.add_question(
        step_b,
        name="Main goal",
        prompt="What would you like to achieve with us?",
        importance=8,
    )
    editor.add_example(
        question, name="Clear goal", type=FewShotType.POSITIVE, prompt="I want to grow my sales."
    )
    editor.add_example(
        question, name="Off topic", type=FewShotType.NEGATIVE, prompt="What's the weather like?"
    )

    success = editor.add_output(step_a, name="success", conditional=CONFIRMED)
    editor.add_output(step_a, name="retry", conditional=DECLINED)
    b_entry = editor.add_input(step_b, name="from A", type=InputType.ANY, source=step_a)
    editor.connect(success, b_entry)

    b_next = editor.add_output(step_b, name="next")
    c_entry = editor.add_input(
        step_c, name="from B", type=InputType.FULLY_COMPLETED, source=step_b
    )
    editor.connect(b_next, c_entry)

    logger.info("Seeded TreeFlow %s (%s)", tree_flow.id, tree_flow)
    return tree_flow
