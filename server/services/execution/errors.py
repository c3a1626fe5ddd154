"""Exception hierarchy for the workflow engine."""

from typing import Any, Dict, List, Optional


class WorkflowEngineError(Exception):
    """Base class for all workflow engine errors."""


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a definition fails validation and cannot be activated."""

    def __init__(self, errors: List[Dict[str, Any]], message: str = "Workflow definition is invalid"):
        self.errors = errors
        codes = ", ".join(sorted({e.get("code", "") for e in errors}))
        super().__init__(f"{message}: {codes}" if codes else message)


class DefinitionNotFoundError(WorkflowEngineError):
    def __init__(self, definition_id: str, org_id: Optional[str] = None):
        self.definition_id = definition_id
        self.org_id = org_id
        super().__init__(f"Workflow definition not found: {definition_id}")


class DefinitionNotActiveError(WorkflowEngineError):
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Workflow definition is not active: {definition_id}")


class DefinitionMissingStartError(WorkflowEngineError):
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Workflow definition has no START node: {definition_id}")


class DefinitionInUseError(WorkflowEngineError):
    """Raised when editing or deleting a definition that is still referenced."""

    def __init__(self, definition_id: str, reason: str):
        self.definition_id = definition_id
        self.reason = reason
        super().__init__(f"Workflow definition {definition_id} cannot be changed: {reason}")


class ExecutionNotFoundError(WorkflowEngineError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution not found: {execution_id}")


class ConcurrentModificationError(WorkflowEngineError):
    """Raised when a version compare-and-swap matches zero rows.

    The concurrent writer wins; the caller aborts without retrying.
    """

    def __init__(self, execution_id: str, expected_version: int):
        self.execution_id = execution_id
        self.expected_version = expected_version
        super().__init__(
            f"Workflow execution {execution_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class NodeNotFoundError(WorkflowEngineError):
    def __init__(self, node_id: str, definition_id: Optional[str] = None):
        self.node_id = node_id
        self.definition_id = definition_id
        super().__init__(f"Node {node_id} not found in workflow definition {definition_id}")


class NodeExecutorError(WorkflowEngineError):
    """Wraps a failure raised by a node's side effect."""

    def __init__(self, node_id: str, node_type: str, message: str):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(f"{node_type} node {node_id} failed: {message}")
