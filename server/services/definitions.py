"""Workflow definition lifecycle: create, edit, validate, activate, delete.

Editing bumps the version and deactivates the definition, so every graph
that executions can start from has passed validation.
"""

import uuid
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.database import Database
from core.logging import get_logger
from models.database import WorkflowDefinitionRecord
from models.workflow import WorkflowDefinition, WorkflowGraph
from services.execution.errors import (
    DefinitionInUseError,
    DefinitionNotFoundError,
    WorkflowValidationError,
)
from services.execution.runtime import load_definition
from services.validation import (
    ValidationResult,
    validate_definition,
    validate_definition_payload,
)

logger = get_logger(__name__)


def _graph_payload(graph: WorkflowGraph) -> Dict[str, List[Dict[str, Any]]]:
    """Serialize nodes and edges for JSON storage (camelCase config keys)."""
    return {
        "nodes": [
            {
                "id": node.id,
                "type": node.type,
                "config": node.config.model_dump(by_alias=True, exclude={"type"}, exclude_none=True),
                "position": node.position.model_dump(),
            }
            for node in graph.nodes
        ],
        "edges": [edge.model_dump(exclude_none=True) for edge in graph.edges],
    }


def _parse_graph(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]]) -> WorkflowGraph:
    try:
        return WorkflowGraph.model_validate({"nodes": nodes, "edges": edges})
    except ValidationError:
        result = validate_definition_payload({"nodes": nodes, "edges": edges})
        raise WorkflowValidationError([issue.to_dict() for issue in result.errors])


class DefinitionService:
    """Manages stored workflow definitions for a tenant."""

    def __init__(self, database: Database):
        self.database = database

    async def get(self, definition_id: str, org_id: str) -> WorkflowDefinition:
        record = await self._require(definition_id, org_id)
        return load_definition(record)

    async def list(self, org_id: str, active_only: bool = False) -> List[WorkflowDefinition]:
        records = await self.database.list_definitions(org_id, active_only=active_only)
        return [load_definition(record) for record in records]

    async def create(self, org_id: str, name: str, nodes: List[Dict[str, Any]],
                     edges: List[Dict[str, Any]], description: Optional[str] = None,
                     industry: Optional[str] = None) -> WorkflowDefinition:
        """Store a new inactive definition at version 1.

        The graph must parse, but it may still be semantically invalid; that
        is checked on activation.

        Raises:
            WorkflowValidationError: The payload does not have the graph shape
        """
        graph = _parse_graph(nodes, edges)
        record = WorkflowDefinitionRecord(
            id=str(uuid.uuid4()),
            org_id=org_id,
            name=name,
            description=description,
            industry=industry,
            is_active=False,
            version=1,
            **_graph_payload(graph),
        )
        record = await self.database.save_definition(record)
        logger.info("Workflow definition created", definition_id=record.id, org_id=org_id, name=name)
        return load_definition(record)

    async def update(self, definition_id: str, org_id: str, *,
                     name: Optional[str] = None,
                     description: Optional[str] = None,
                     industry: Optional[str] = None,
                     nodes: Optional[List[Dict[str, Any]]] = None,
                     edges: Optional[List[Dict[str, Any]]] = None) -> WorkflowDefinition:
        """Edit a definition. Bumps the version and deactivates it.

        Raises:
            DefinitionNotFoundError: Unknown definition for the org
            DefinitionInUseError: Running executions still follow this graph
            WorkflowValidationError: The new graph does not have the graph shape
        """
        record = await self._require(definition_id, org_id)
        await self._ensure_not_running(definition_id)

        if nodes is not None or edges is not None:
            graph = _parse_graph(
                nodes if nodes is not None else record.nodes,
                edges if edges is not None else record.edges,
            )
            payload = _graph_payload(graph)
            record.nodes = payload["nodes"]
            record.edges = payload["edges"]
        if name is not None:
            record.name = name
        if description is not None:
            record.description = description
        if industry is not None:
            record.industry = industry

        record.version += 1
        record.is_active = False
        record = await self.database.save_definition(record)

        logger.info("Workflow definition updated",
                    definition_id=definition_id, version=record.version)
        return load_definition(record)

    async def delete(self, definition_id: str, org_id: str) -> None:
        """Delete an inactive definition that no execution references.

        Executions keep a foreign key to their definition, including finished
        ones, so a definition with execution history is deactivated instead.
        """
        record = await self._require(definition_id, org_id)
        if record.is_active:
            raise DefinitionInUseError(definition_id, "deactivate it before deleting")
        await self._ensure_not_running(definition_id)
        executions = await self.database.count_executions_for_definition(definition_id)
        if executions:
            raise DefinitionInUseError(definition_id, f"{executions} execution(s) in history")

        await self.database.delete_definition(definition_id, org_id)
        logger.info("Workflow definition deleted", definition_id=definition_id)

    async def validate(self, definition_id: str, org_id: str) -> ValidationResult:
        record = await self._require(definition_id, org_id)
        return validate_definition_payload({"nodes": record.nodes, "edges": record.edges})

    async def activate(self, definition_id: str, org_id: str) -> WorkflowDefinition:
        """Validate and activate a definition.

        Raises:
            WorkflowValidationError: The definition has validation errors
        """
        record = await self._require(definition_id, org_id)
        definition = load_definition(record)

        result = validate_definition(definition)
        if not result.is_valid:
            logger.warning("Activation rejected",
                           definition_id=definition_id, codes=sorted(set(result.codes)))
            raise WorkflowValidationError([issue.to_dict() for issue in result.errors])

        if not record.is_active:
            record.is_active = True
            record = await self.database.save_definition(record)
            logger.info("Workflow definition activated",
                        definition_id=definition_id, version=record.version)
        return load_definition(record)

    async def deactivate(self, definition_id: str, org_id: str) -> WorkflowDefinition:
        """Stop new executions from starting. Running executions continue."""
        record = await self._require(definition_id, org_id)
        if record.is_active:
            record.is_active = False
            record = await self.database.save_definition(record)
            logger.info("Workflow definition deactivated", definition_id=definition_id)
        return load_definition(record)

    async def _require(self, definition_id: str, org_id: str) -> WorkflowDefinitionRecord:
        record = await self.database.get_definition(definition_id, org_id)
        if record is None:
            raise DefinitionNotFoundError(definition_id, org_id)
        return record

    async def _ensure_not_running(self, definition_id: str) -> None:
        running = await self.database.count_running_executions_for_definition(definition_id)
        if running:
            raise DefinitionInUseError(definition_id, f"{running} running execution(s)")
