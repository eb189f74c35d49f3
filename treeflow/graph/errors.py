from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .validation import ValidationReport


class TreeFlowError(Exception):
    """Base exception for TreeFlow graph errors."""


class StepNotFoundError(TreeFlowError):
    """Raised when a Step reference does not resolve."""


class QuestionNotFoundError(StepNotFoundError):
    """Raised when a question slug does not resolve within a Step."""


class EntryPointError(TreeFlowError):
    """Raised when a TreeFlow would have zero or several first Steps."""


class GraphInvariantError(TreeFlowError):
    """Base class for rejected graph mutations; the session state is left as it was."""


class DuplicateConnection(GraphInvariantError):
    """Raised when the same output is wired twice into the same input."""


class OutputAlreadyWired(GraphInvariantError):
    """Raised when an output already has a wire to a different input."""


class SelfLoop(GraphInvariantError):
    """Raised when a Step's output would be wired into one of its own inputs."""


class CrossTreeFlowReference(GraphInvariantError):
    """Raised when an edge would reference a Step of another TreeFlow."""


class TreeFlowValidationError(TreeFlowError):
    """Raised when a TreeFlow fails activation-time validation."""

    def __init__(self, report: ValidationReport) -> None:
        self.report = report
        super().__init__("TreeFlow validation failed:\n" + "\n".join(report.errors))
