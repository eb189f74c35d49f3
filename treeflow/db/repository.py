from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from treeflow.db.models import (
    Step,
    StepConnection,
    StepInput,
    StepOutput,
    StepQuestion,
    TreeFlow,
)

logger = logging.getLogger(__name__)


# --- TreeFlow Repository Functions ---


def get_tree_flow(session: Session, tree_flow_id: UUID) -> TreeFlow | None:
    """Get a TreeFlow with its steps and edge candidates eagerly loaded."""
    return session.execute(
        select(TreeFlow)
        .where(TreeFlow.id == tree_flow_id)
        .options(
            selectinload(TreeFlow.steps).selectinload(Step.outputs).selectinload(
                StepOutput.connection
            ),
            selectinload(TreeFlow.steps).selectinload(Step.inputs),
            selectinload(TreeFlow.steps)
            .selectinload(Step.questions)
            .selectinload(StepQuestion.examples),
        )
    ).scalar_one_or_none()


def find_tree_flows_by_slug(session: Session, slug: str) -> Sequence[TreeFlow]:
    """Every TreeFlow carrying ``slug``; more than one means the slug is ambiguous."""
    return session.execute(
        select(TreeFlow).where(TreeFlow.slug == slug).order_by(TreeFlow.created_at)
    ).scalars().all()


def tree_flow_slugs(session: Session) -> list[str]:
    return [s for s in session.execute(select(TreeFlow.slug)).scalars() if s]


def list_tree_flows(
    session: Session, *, organization_id: UUID | None = None, active_only: bool = False
) -> Sequence[TreeFlow]:
    """List TreeFlows, optionally narrowed to one organization or to active flows."""
    stmt = select(TreeFlow)
    if organization_id is not None:
        stmt = stmt.where(TreeFlow.organization_id == organization_id)
    if active_only:
        stmt = stmt.where(TreeFlow.is_active.is_(True))
    return session.execute(stmt.order_by(TreeFlow.name)).scalars().all()


def count_steps(session: Session, tree_flow_id: UUID) -> int:
    return session.execute(
        select(func.count(Step.id)).where(Step.tree_flow_id == tree_flow_id)
    ).scalar_one()


# --- Step Repository Functions ---


def get_step(session: Session, step_id: UUID) -> Step | None:
    """Resolve a Step reference by ID; None means the Step no longer exists."""
    return session.get(Step, step_id)


def get_first_step(session: Session, tree_flow_id: UUID) -> Step | None:
    return session.execute(
        select(Step)
        .where(Step.tree_flow_id == tree_flow_id, Step.first.is_(True))
        .order_by(Step.view_order)
    ).scalars().first()


def next_step_order(session: Session, tree_flow_id: UUID) -> int:
    current = session.execute(
        select(func.max(Step.view_order)).where(Step.tree_flow_id == tree_flow_id)
    ).scalar_one_or_none()
    return (current or 0) + 1


# --- Edge Repository Functions ---


def get_output(session: Session, output_id: UUID) -> StepOutput | None:
    """Get an output with its connection eagerly loaded."""
    return session.execute(
        select(StepOutput)
        .where(StepOutput.id == output_id)
        .options(selectinload(StepOutput.connection))
    ).scalar_one_or_none()


def get_input(session: Session, input_id: UUID) -> StepInput | None:
    return session.get(StepInput, input_id)


def get_connection(session: Session, connection_id: UUID) -> StepConnection | None:
    return session.get(StepConnection, connection_id)


def find_connection(
    session: Session, *, source_output_id: UUID, target_input_id: UUID | None = None
) -> StepConnection | None:
    """Find the wire leaving ``source_output_id`` (optionally into a given input)."""
    stmt = select(StepConnection).where(StepConnection.source_output_id == source_output_id)
    if target_input_id is not None:
        stmt = stmt.where(StepConnection.target_input_id == target_input_id)
    return session.execute(stmt).scalar_one_or_none()


def list_connections(session: Session, tree_flow_id: UUID) -> Sequence[StepConnection]:
    """List every wire whose source or target Step belongs to the TreeFlow."""
    source_step_ids = select(Step.id).where(Step.tree_flow_id == tree_flow_id)
    return (
        session.execute(
            select(StepConnection)
            .join(StepOutput, StepConnection.source_output_id == StepOutput.id)
            .join(StepInput, StepConnection.target_input_id == StepInput.id)
            .where(
                StepOutput.step_id.in_(source_step_ids) | StepInput.step_id.in_(source_step_ids)
            )
            .options(
                selectinload(StepConnection.source_output).selectinload(StepOutput.step),
                selectinload(StepConnection.target_input).selectinload(StepInput.step),
            )
            .order_by(StepConnection.created_at, StepConnection.id)
        )
        .scalars()
        .all()
    )


def delete_tree_flow_cascade(session: Session, tree_flow_id: UUID) -> None:
    """Delete a TreeFlow and everything it owns."""
    tree_flow = get_tree_flow(session, tree_flow_id)
    if not tree_flow:
        raise ValueError(f"TreeFlow {tree_flow_id} not found")

    # ORM cascades cover steps, content and edges; FK ondelete rules back them up
    session.delete(tree_flow)
    session.flush()
    logger.debug("Deleted TreeFlow %s", tree_flow_id)
