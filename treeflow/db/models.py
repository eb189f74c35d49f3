"""
DATABASE MODELS - TREEFLOW DECISION GRAPH
=========================================

Ownership (cascade delete, orphan removal):

    TreeFlow -> Step -> StepQuestion -> StepFewShotExample
                     -> StepOutput  -> StepConnection
                     -> StepInput   -> StepConnection

References (non-owning, ON DELETE SET NULL):

    StepOutput.destination_step_id -> Step
    StepInput.source_step_id       -> Step

Storage-level invariants:

- at most one Step per TreeFlow has is_first = true (partial unique index)
- StepConnection.source_output_id is unique (one wire per output)
- (source_output_id, target_input_id) is unique
- StepQuestion.importance is within [1, 10]

Cross-row invariants (no self-loop, same TreeFlow on both ends, exactly one
first Step at activation) are enforced by the graph services in
``treeflow.graph``; models only carry the data and derived predicates.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    func,
    inspect,
    text,
)
from sqlalchemy import (
    Enum as SqlEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from uuid_v7.base import uuid7

from treeflow.db.base import Base
from treeflow.utils.slug import slugify

IMPORTANCE_MIN = 1
IMPORTANCE_MAX = 10
DEFAULT_IMPORTANCE = 5

# --- Enumerations


class InputType(str, Enum):
    """Completion guard of a StepInput."""

    ANY = "any"
    FULLY_COMPLETED = "fully_completed"
    FAILED = "failed"


class FewShotType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class CompletionVerdict(str, Enum):
    """Outcome classification assigned to a Step after the agent executes it."""

    FULLY_COMPLETED = "fully_completed"
    FAILED = "failed"
    PARTIAL = "partial"


# --- Base mixins


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


# --- Graph entities


class TreeFlow(Base, TimestampMixin):
    __tablename__ = "tree_flows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    # Owning organization lives outside this subsystem; stored as a plain reference
    organization_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Semantic version chosen by the author, e.g. "1.0.0"
    version: Mapped[str] = mapped_column(String(50), nullable=False, default="1.0.0")
    # Bumped on every structural mutation made through the authoring API
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    steps: Mapped[list[Step]] = relationship(
        back_populates="tree_flow",
        cascade="all, delete-orphan",
        order_by="Step.view_order",
    )

    def add_step(self, step: Step) -> Step:
        """Attach ``step`` to this TreeFlow, keeping the owner back-reference."""
        if step not in self.steps:
            self.steps.append(step)
        return step

    def remove_step(self, step: Step) -> None:
        """Detach ``step``; orphan removal deletes it on the next flush."""
        if step in self.steps:
            self.steps.remove(step)

    def bump_revision(self) -> int:
        self.revision = (self.revision or 1) + 1
        return self.revision

    def get_first_step(self) -> Step | None:
        """Return the first Step flagged ``first`` in iteration order, or None."""
        for step in self.steps:
            if step.first:
                return step
        return None

    def first_steps(self) -> list[Step]:
        return [step for step in self.steps if step.first]

    def step_by_id(self, step_id: UUID | None) -> Step | None:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_by_slug(self, slug: str) -> Step | None:
        for step in self.steps:
            if step.slug == slug:
                return step
        return None

    def __str__(self) -> str:
        return f"{self.name} v{self.version}"


class Step(Base, TimestampMixin):
    __tablename__ = "steps"
    __table_args__ = (
        Index("ix_steps_tree_flow_first", "tree_flow_id", "is_first"),
        Index("ix_steps_tree_flow_order", "tree_flow_id", "view_order"),
        Index("ix_steps_slug", "slug"),
        # One entry point per TreeFlow
        Index(
            "uq_steps_single_first",
            "tree_flow_id",
            unique=True,
            sqlite_where=text("is_first = 1"),
            postgresql_where=text("is_first"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    tree_flow_id: Mapped[UUID] = mapped_column(ForeignKey("tree_flows.id", ondelete="CASCADE"))

    first: Mapped[bool] = mapped_column("is_first", Boolean, nullable=False, default=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    objective: Mapped[str | None] = mapped_column(Text, nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    view_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    tree_flow: Mapped[TreeFlow] = relationship(back_populates="steps")
    questions: Mapped[list[StepQuestion]] = relationship(
        back_populates="step",
        cascade="all, delete-orphan",
        order_by="StepQuestion.view_order",
    )
    outputs: Mapped[list[StepOutput]] = relationship(
        back_populates="step",
        cascade="all, delete-orphan",
        foreign_keys="StepOutput.step_id",
        order_by="StepOutput.view_order",
    )
    inputs: Mapped[list[StepInput]] = relationship(
        back_populates="step",
        cascade="all, delete-orphan",
        foreign_keys="StepInput.step_id",
        order_by="StepInput.view_order",
    )
    # Other Steps' edges that point here; nulled (not deleted) when this Step goes away
    incoming_outputs: Mapped[list[StepOutput]] = relationship(
        back_populates="destination_step",
        foreign_keys="StepOutput.destination_step_id",
    )
    outgoing_inputs: Mapped[list[StepInput]] = relationship(
        back_populates="source_step",
        foreign_keys="StepInput.source_step_id",
    )

    @property
    def is_terminal(self) -> bool:
        """A Step without outputs ends every path that reaches it."""
        return not self.outputs

    def __str__(self) -> str:
        return self.name


class StepQuestion(Base, TimestampMixin):
    __tablename__ = "step_questions"
    __table_args__ = (
        CheckConstraint(
            f"importance >= {IMPORTANCE_MIN} AND importance <= {IMPORTANCE_MAX}",
            name="importance_range",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    step_id: Mapped[UUID] = mapped_column(ForeignKey("steps.id", ondelete="CASCADE"))

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    objective: Mapped[str | None] = mapped_column(Text, nullable=True)
    importance: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_IMPORTANCE)
    view_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    step: Mapped[Step] = relationship(back_populates="questions")
    examples: Mapped[list[StepFewShotExample]] = relationship(
        back_populates="question", cascade="all, delete-orphan"
    )

    @validates("importance")
    def _clamp_importance(self, _key: str, value: int | None) -> int:
        if value is None:
            return DEFAULT_IMPORTANCE
        return max(IMPORTANCE_MIN, min(IMPORTANCE_MAX, int(value)))

    @property
    def positive_examples(self) -> list[StepFewShotExample]:
        return [e for e in self.examples if e.type == FewShotType.POSITIVE]

    @property
    def negative_examples(self) -> list[StepFewShotExample]:
        return [e for e in self.examples if e.type == FewShotType.NEGATIVE]

    def __str__(self) -> str:
        return self.name


class StepFewShotExample(Base, TimestampMixin):
    __tablename__ = "step_few_shot_examples"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    question_id: Mapped[UUID] = mapped_column(ForeignKey("step_questions.id", ondelete="CASCADE"))

    type: Mapped[FewShotType] = mapped_column(
        SqlEnum(FewShotType, name="few_shot_type"), nullable=False, default=FewShotType.POSITIVE
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    question: Mapped[StepQuestion] = relationship(back_populates="examples")


class StepOutput(Base, TimestampMixin):
    """A declared, possibly conditional exit from a Step."""

    __tablename__ = "step_outputs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    step_id: Mapped[UUID] = mapped_column(ForeignKey("steps.id", ondelete="CASCADE"))
    # UI hint only; routing follows StepConnection
    destination_step_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("steps.id", ondelete="SET NULL"), nullable=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Free-text condition, evaluated by the agent-execution collaborator
    conditional: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Evaluation order for first-match-wins routing
    view_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    step: Mapped[Step] = relationship(back_populates="outputs", foreign_keys=[step_id])
    destination_step: Mapped[Step | None] = relationship(
        back_populates="incoming_outputs", foreign_keys=[destination_step_id]
    )
    connection: Mapped[StepConnection | None] = relationship(
        back_populates="source_output", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def has_destination(self) -> bool:
        return self.destination_step_id is not None or self.destination_step is not None

    @property
    def has_conditional(self) -> bool:
        return bool(self.conditional and self.conditional.strip())

    @property
    def has_connection(self) -> bool:
        return self.connection is not None

    def __str__(self) -> str:
        return self.name


class StepInput(Base, TimestampMixin):
    """A declared entry guard into a Step."""

    __tablename__ = "step_inputs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    step_id: Mapped[UUID] = mapped_column(ForeignKey("steps.id", ondelete="CASCADE"))
    source_step_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("steps.id", ondelete="SET NULL"), nullable=True
    )

    type: Mapped[InputType] = mapped_column(
        SqlEnum(InputType, name="step_input_type"), nullable=False, default=InputType.ANY
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    view_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    step: Mapped[Step] = relationship(back_populates="inputs", foreign_keys=[step_id])
    source_step: Mapped[Step | None] = relationship(
        back_populates="outgoing_inputs", foreign_keys=[source_step_id]
    )
    connections: Mapped[list[StepConnection]] = relationship(
        back_populates="target_input", cascade="all, delete-orphan"
    )

    @property
    def has_source(self) -> bool:
        return self.source_step_id is not None or self.source_step is not None

    @property
    def requires_full_completion(self) -> bool:
        return self.type == InputType.FULLY_COMPLETED

    @property
    def requires_failure(self) -> bool:
        return self.type == InputType.FAILED

    @property
    def accepts_any_status(self) -> bool:
        return self.type == InputType.ANY

    def accepts(self, verdict: CompletionVerdict) -> bool:
        """Return True if the upstream verdict satisfies this input's guard."""
        if self.type == InputType.ANY:
            return True
        if self.type == InputType.FULLY_COMPLETED:
            return verdict == CompletionVerdict.FULLY_COMPLETED
        return verdict == CompletionVerdict.FAILED

    def __str__(self) -> str:
        return self.name


class StepConnection(Base, TimestampMixin):
    """Validated wire binding one StepOutput to one StepInput."""

    __tablename__ = "step_connections"
    __table_args__ = (
        UniqueConstraint(
            "source_output_id", "target_input_id", name="uq_step_connection_output_input"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    source_output_id: Mapped[UUID] = mapped_column(
        ForeignKey("step_outputs.id", ondelete="CASCADE"), unique=True
    )
    target_input_id: Mapped[UUID] = mapped_column(
        ForeignKey("step_inputs.id", ondelete="CASCADE"), index=True
    )

    source_output: Mapped[StepOutput] = relationship(back_populates="connection")
    target_input: Mapped[StepInput] = relationship(back_populates="connections")

    @property
    def source_step(self) -> Step:
        return self.source_output.step

    @property
    def target_step(self) -> Step:
        return self.target_input.step

    def __str__(self) -> str:
        return f"{self.source_output.name} -> {self.target_input.name}"


# --- Slug maintenance


def _assign_slug(_mapper, _connection, target) -> None:  # type: ignore[no-untyped-def]
    """Derive ``slug`` from ``name`` on insert, and on update when the name changed."""
    if not target.name:
        return
    state = inspect(target)
    if state.pending or not state.has_identity:
        if not target.slug:
            target.slug = slugify(target.name)
        return
    name_changed = state.attrs.name.history.has_changes()
    slug_changed = state.attrs.slug.history.has_changes()
    if name_changed and not slug_changed:
        target.slug = slugify(target.name)


for _sluggable in (TreeFlow, Step, StepQuestion, StepFewShotExample, StepOutput, StepInput):
    event.listen(_sluggable, "before_insert", _assign_slug)
    event.listen(_sluggable, "before_update", _assign_slug)
