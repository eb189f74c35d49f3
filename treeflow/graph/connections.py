"""Connection validator: the single authority that turns an output and an input into a wire."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from treeflow.db import repository
from treeflow.db.models import Step, StepConnection, StepInput, StepOutput, TreeFlow

from .errors import (
    CrossTreeFlowReference,
    DuplicateConnection,
    GraphInvariantError,
    OutputAlreadyWired,
    SelfLoop,
)

logger = logging.getLogger(__name__)


def same_step(a: Step | None, b: Step | None) -> bool:
    if a is None or b is None:
        return False
    if a is b:
        return True
    return a.id is not None and a.id == b.id


def same_tree_flow(a: Step, b: Step) -> bool:
    if a.tree_flow is not None and a.tree_flow is b.tree_flow:
        return True
    return a.tree_flow_id is not None and a.tree_flow_id == b.tree_flow_id


class ConnectionValidator:
    """Checks the wiring invariants without touching any state."""

    def check(self, output: StepOutput, target_input: StepInput) -> GraphInvariantError | None:
        """Return the first violated invariant for ``output -> target_input``, or None."""
        existing = output.connection
        if existing is not None:
            if existing.target_input is target_input or (
                target_input.id is not None and existing.target_input_id == target_input.id
            ):
                return DuplicateConnection(
                    f"Output '{output.name}' is already wired to input '{target_input.name}'"
                )
            return OutputAlreadyWired(
                f"Output '{output.name}' is already wired to input "
                f"'{existing.target_input.name}'"
            )

        if same_step(output.step, target_input.step):
            return SelfLoop(
                f"Step '{output.step.name}' cannot wire its own output '{output.name}' "
                f"into its own input '{target_input.name}'"
            )

        if not same_tree_flow(output.step, target_input.step):
            return CrossTreeFlowReference(
                f"Output '{output.name}' and input '{target_input.name}' "
                "must belong to the same TreeFlow"
            )

        return None

    def validate(self, output: StepOutput, target_input: StepInput) -> None:
        """Raise the first violated invariant, if any."""
        error = self.check(output, target_input)
        if error is not None:
            raise error


class ConnectionService:
    """Creates and removes StepConnections inside the caller's transaction."""

    def __init__(self, session: Session, validator: ConnectionValidator | None = None) -> None:
        self.session = session
        self.validator = validator or ConnectionValidator()

    def connect(self, output: StepOutput, target_input: StepInput) -> StepConnection:
        """Wire ``output`` into ``target_input``.

        The validator pre-checks so callers get a precise error; the unique
        constraints on the connection table catch a concurrent author that
        wired the same output in between.
        """
        error = self.validator.check(output, target_input)
        if error is not None:
            logger.warning("Rejected connection %s -> %s: %s", output.id, target_input.id, error)
            raise error

        try:
            with self.session.begin_nested():
                connection = StepConnection(source_output=output, target_input=target_input)
                self.session.add(connection)
                self.session.flush()
        except IntegrityError as exc:
            logger.warning("Connection insert rejected by storage constraints: %s", exc)
            raise self._translate_conflict(output, target_input) from exc

        # The wire is authoritative; keep the destination hint in step with it
        output.destination_step = target_input.step
        self._touch(output.step)
        self.session.flush()

        logger.info(
            "Connected output %s (%s) -> input %s (%s)",
            output.id,
            output.name,
            target_input.id,
            target_input.name,
        )
        return connection

    def disconnect(self, connection: StepConnection) -> None:
        """Remove a wire; its output and input stay as unwired candidates."""
        output = connection.source_output
        target_input = connection.target_input

        if output is not None:
            if (
                target_input is not None
                and output.destination_step_id is not None
                and output.destination_step_id == target_input.step_id
            ):
                output.destination_step = None
            output.connection = None
            self._touch(output.step)
        if target_input is not None and connection in target_input.connections:
            target_input.connections.remove(connection)

        self.session.delete(connection)
        self.session.flush()
        logger.info("Removed connection %s", connection.id)

    def disconnect_step(self, step: Step) -> int:
        """Remove every wire entering or leaving ``step``; returns how many were removed."""
        connections: list[StepConnection] = []
        for output in step.outputs:
            if output.connection is not None:
                connections.append(output.connection)
        for step_input in step.inputs:
            connections.extend(step_input.connections)

        seen: set[int] = set()
        for connection in connections:
            if id(connection) in seen:
                continue
            seen.add(id(connection))
            self.disconnect(connection)
        return len(seen)

    def list_connections(self, tree_flow: TreeFlow) -> Sequence[StepConnection]:
        return repository.list_connections(self.session, tree_flow.id)

    def _translate_conflict(
        self, output: StepOutput, target_input: StepInput
    ) -> GraphInvariantError:
        existing = repository.find_connection(self.session, source_output_id=output.id)
        if existing is not None and existing.target_input_id == target_input.id:
            return DuplicateConnection(
                f"Output '{output.name}' is already wired to input '{target_input.name}'"
            )
        return OutputAlreadyWired(f"Output '{output.name}' is already wired")

    @staticmethod
    def _touch(step: Step | None) -> None:
        if step is not None and step.tree_flow is not None:
            step.tree_flow.bump_revision()
