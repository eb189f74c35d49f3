from .authoring import TreeFlowEditor
from .connections import ConnectionService, ConnectionValidator
from .errors import (
    CrossTreeFlowReference,
    DuplicateConnection,
    EntryPointError,
    GraphInvariantError,
    OutputAlreadyWired,
    QuestionNotFoundError,
    SelfLoop,
    StepNotFoundError,
    TreeFlowError,
    TreeFlowValidationError,
)
from .export import TreeFlowDocument, export_tree_flow, import_tree_flow, ordered_steps
from .progress import FlowNavigator, FlowProgress, StepProgress
from .routing import (
    ConditionEvaluator,
    MappingConditionEvaluator,
    RoutingOutcome,
    RoutingStatus,
    StepRouter,
)
from .validation import TreeFlowValidator, ValidationReport

__all__ = [
    "ConditionEvaluator",
    "ConnectionService",
    "ConnectionValidator",
    "CrossTreeFlowReference",
    "DuplicateConnection",
    "EntryPointError",
    "FlowNavigator",
    "FlowProgress",
    "GraphInvariantError",
    "MappingConditionEvaluator",
    "OutputAlreadyWired",
    "QuestionNotFoundError",
    "RoutingOutcome",
    "RoutingStatus",
    "SelfLoop",
    "StepNotFoundError",
    "StepProgress",
    "StepRouter",
    "TreeFlowDocument",
    "TreeFlowEditor",
    "TreeFlowError",
    "TreeFlowValidationError",
    "TreeFlowValidator",
    "ValidationReport",
    "export_tree_flow",
    "import_tree_flow",
    "ordered_steps",
]
