"""Activation-time structural validation of a TreeFlow."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from treeflow.db.models import Step, TreeFlow

from .connections import same_step, same_tree_flow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationReport:
    """Errors block activation; warnings are informational."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class TreeFlowValidator:
    """Walks a loaded TreeFlow and reports structural problems."""

    def __init__(self) -> None:
        self.validation_errors: list[str] = []
        self.validation_warnings: list[str] = []

    def validate(self, tree_flow: TreeFlow) -> ValidationReport:
        self.validation_errors = []
        self.validation_warnings = []

        self._check_entry_point(tree_flow)
        self._check_slugs(tree_flow)
        for step in tree_flow.steps:
            self._check_outputs(step)
            self._check_inputs(step)
        self._check_unreachable_steps(tree_flow)

        report = ValidationReport(
            errors=list(self.validation_errors), warnings=list(self.validation_warnings)
        )
        logger.debug(
            "Validated TreeFlow %s: %d errors, %d warnings",
            tree_flow.id,
            len(report.errors),
            len(report.warnings),
        )
        return report

    def _check_entry_point(self, tree_flow: TreeFlow) -> None:
        first_steps = tree_flow.first_steps()
        if not first_steps:
            self.validation_errors.append(f"TreeFlow '{tree_flow.name}' has no first step")
        elif len(first_steps) > 1:
            names = ", ".join(f"'{step.name}'" for step in first_steps)
            self.validation_errors.append(
                f"TreeFlow '{tree_flow.name}' has {len(first_steps)} first steps: {names}"
            )

    def _check_slugs(self, tree_flow: TreeFlow) -> None:
        seen: set[str] = set()
        for step in tree_flow.steps:
            if not step.slug:
                continue
            if step.slug in seen:
                self.validation_errors.append(f"Duplicate step slug: '{step.slug}'")
            seen.add(step.slug)

    def _check_outputs(self, step: Step) -> None:
        for output in step.outputs:
            destination = output.destination_step
            if destination is not None and not same_tree_flow(step, destination):
                self.validation_errors.append(
                    f"Output '{output.name}' of step '{step.name}' points to step "
                    f"'{destination.name}' of another TreeFlow"
                )

            connection = output.connection
            if connection is None:
                if destination is not None:
                    self.validation_warnings.append(
                        f"Output '{output.name}' of step '{step.name}' names destination "
                        f"'{destination.name}' but is not wired; routing ends there"
                    )
                continue

            target_step = connection.target_input.step
            if same_step(step, target_step):
                self.validation_errors.append(
                    f"Output '{output.name}' of step '{step.name}' is wired into its own step"
                )
            elif not same_tree_flow(step, target_step):
                self.validation_errors.append(
                    f"Output '{output.name}' of step '{step.name}' is wired into step "
                    f"'{target_step.name}' of another TreeFlow"
                )
            if destination is not None and not same_step(destination, target_step):
                self.validation_warnings.append(
                    f"Output '{output.name}' of step '{step.name}' names destination "
                    f"'{destination.name}' but is wired to '{target_step.name}'"
                )

    def _check_inputs(self, step: Step) -> None:
        for step_input in step.inputs:
            source = step_input.source_step
            if source is not None and not same_tree_flow(step, source):
                self.validation_errors.append(
                    f"Input '{step_input.name}' of step '{step.name}' names source step "
                    f"'{source.name}' of another TreeFlow"
                )

    def _check_unreachable_steps(self, tree_flow: TreeFlow) -> None:
        """BFS over connections from the first step."""
        entry = tree_flow.get_first_step()
        if entry is None:
            return

        visited: set[int] = set()
        queue = [entry]
        while queue:
            step = queue.pop(0)
            if id(step) in visited:
                continue
            visited.add(id(step))
            for output in step.outputs:
                if output.connection is None:
                    continue
                target = output.connection.target_input.step
                if target is not None and id(target) not in visited:
                    queue.append(target)

        unreachable = [step.name for step in tree_flow.steps if id(step) not in visited]
        if unreachable:
            self.validation_warnings.append(
                f"Unreachable steps detected: {', '.join(sorted(unreachable))}"
            )
