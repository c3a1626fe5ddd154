"""Workflow execution engine.

Durable, queue-driven execution of workflow definitions:
- models.py: execution states, queue jobs, node outcomes
- errors.py: exception hierarchy
- runtime.py: lifecycle state machine with version compare-and-swap
- conditions.py: CONDITION evaluation against lead records
- delays.py: DELAY resume time and business hours
- templates.py: SMS template placeholder substitution
"""

from .models import (
    ExecutionStatus,
    StepStatus,
    TERMINAL_STATUSES,
    NodeJob,
    DelayedNodeJob,
    NodeOutcome,
    NodeContext,
    ensure_utc,
)

from .errors import (
    WorkflowEngineError,
    WorkflowValidationError,
    DefinitionNotFoundError,
    DefinitionNotActiveError,
    DefinitionMissingStartError,
    DefinitionInUseError,
    ExecutionNotFoundError,
    ConcurrentModificationError,
    NodeNotFoundError,
    NodeExecutorError,
)

from .conditions import evaluate_condition, get_nested_value
from .delays import calculate_resume_time, convert_to_ms, align_to_business_hours
from .templates import resolve_template
from .runtime import WorkflowRuntime, load_definition

__all__ = [
    # Models
    'ExecutionStatus',
    'StepStatus',
    'TERMINAL_STATUSES',
    'NodeJob',
    'DelayedNodeJob',
    'NodeOutcome',
    'NodeContext',
    'ensure_utc',
    # Errors
    'WorkflowEngineError',
    'WorkflowValidationError',
    'DefinitionNotFoundError',
    'DefinitionNotActiveError',
    'DefinitionMissingStartError',
    'DefinitionInUseError',
    'ExecutionNotFoundError',
    'ConcurrentModificationError',
    'NodeNotFoundError',
    'NodeExecutorError',
    # Evaluation
    'evaluate_condition',
    'get_nested_value',
    'calculate_resume_time',
    'convert_to_ms',
    'align_to_business_hours',
    'resolve_template',
    # Runtime
    'WorkflowRuntime',
    'load_definition',
]
