"""Workflow execution lifecycle.

Every mutation of an execution row is a compare-and-swap on its ``version``
column. A miss raises ConcurrentModificationError and is never retried: the
concurrent writer (usually engagement termination) wins.
"""

import uuid
from datetime import datetime
from typing import Optional

from core.database import Database
from core.logging import get_logger
from models.database import WorkflowExecutionRecord, WorkflowStepExecutionRecord
from models.workflow import WorkflowDefinition, find_start_node
from services.execution.errors import (
    ConcurrentModificationError,
    DefinitionMissingStartError,
    DefinitionNotActiveError,
    DefinitionNotFoundError,
    ExecutionNotFoundError,
)
from services.execution.models import (
    DelayedNodeJob,
    ExecutionStatus,
    NodeJob,
    StepStatus,
    ensure_utc,
)

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000


def load_definition(record) -> WorkflowDefinition:
    """Parse a stored definition row into the typed graph model."""
    return WorkflowDefinition.model_validate({
        "id": record.id,
        "org_id": record.org_id,
        "name": record.name,
        "description": record.description,
        "industry": record.industry,
        "is_active": record.is_active,
        "version": record.version,
        "nodes": record.nodes or [],
        "edges": record.edges or [],
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    })


class WorkflowRuntime:
    """State machine for workflow executions.

    Args:
        database: Persistence for definitions, executions and the step log
        queue: JobQueue used to dispatch immediate and delayed node jobs
    """

    def __init__(self, database: Database, queue):
        self.database = database
        self.queue = queue

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_execution(self, execution_id: str,
                            org_id: Optional[str] = None) -> Optional[WorkflowExecutionRecord]:
        return await self.database.get_execution(execution_id, org_id)

    async def require_execution(self, execution_id: str, org_id: str) -> WorkflowExecutionRecord:
        execution = await self.database.get_execution(execution_id, org_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def get_definition(self, definition_id: str, org_id: str) -> WorkflowDefinition:
        record = await self.database.get_definition(definition_id, org_id)
        if record is None:
            raise DefinitionNotFoundError(definition_id, org_id)
        return load_definition(record)

    async def list_steps(self, execution_id: str):
        return await self.database.list_step_executions(execution_id)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start_workflow(self, org_id: str, definition_id: str, lead_id: str,
                             conversation_id: Optional[str] = None) -> str:
        """Create an execution for a lead and dispatch its START node.

        Returns:
            The new execution id

        Raises:
            DefinitionNotFoundError: No definition with this id in the org
            DefinitionNotActiveError: The definition exists but is inactive
            DefinitionMissingStartError: The definition has no START node
        """
        definition = await self.get_definition(definition_id, org_id)
        if not definition.is_active:
            raise DefinitionNotActiveError(definition_id)

        start_node = find_start_node(definition)
        if start_node is None:
            raise DefinitionMissingStartError(definition_id)

        execution = WorkflowExecutionRecord(
            id=str(uuid.uuid4()),
            org_id=org_id,
            workflow_definition_id=definition_id,
            lead_id=lead_id,
            conversation_id=conversation_id,
            status=ExecutionStatus.RUNNING.value,
            current_node_id=start_node.id,
            attempts=0,
            version=1,
        )
        await self.database.create_execution(execution)

        await self.queue.enqueue_now(NodeJob(
            execution_id=execution.id,
            org_id=org_id,
            lead_id=lead_id,
            conversation_id=conversation_id,
            node_id=start_node.id,
        ))

        logger.info("Workflow started",
                    execution_id=execution.id,
                    definition_id=definition_id,
                    definition_version=definition.version,
                    lead_id=lead_id,
                    org_id=org_id)
        return execution.id

    async def advance_workflow(self, execution_id: str, org_id: str, current_node_id: str,
                               next_node_id: Optional[str], branch_label: Optional[str] = None) -> bool:
        """Move an execution to its next node, or complete it.

        Returns:
            False if the execution was no longer running (no-op), True otherwise

        Raises:
            ConcurrentModificationError: Another writer changed the execution
        """
        execution = await self.require_execution(execution_id, org_id)
        if execution.status != ExecutionStatus.RUNNING.value:
            logger.info("Advance skipped, execution not running",
                        execution_id=execution_id, status=execution.status)
            return False

        if next_node_id is None:
            await self._swap(execution, status=ExecutionStatus.COMPLETED.value, resume_at=None)
            logger.info("Workflow completed", execution_id=execution_id, last_node_id=current_node_id)
            return True

        await self._swap(execution, current_node_id=next_node_id, resume_at=None)
        await self.queue.enqueue_now(NodeJob(
            execution_id=execution_id,
            org_id=org_id,
            lead_id=execution.lead_id,
            conversation_id=execution.conversation_id,
            node_id=next_node_id,
        ))

        logger.debug("Advanced workflow",
                     execution_id=execution_id,
                     from_node_id=current_node_id,
                     next_node_id=next_node_id,
                     branch=branch_label)
        return True

    async def schedule_delay(self, execution_id: str, org_id: str, next_node_id: str,
                             resume_at: datetime) -> bool:
        """Record ``resume_at`` and enqueue a delayed job for ``next_node_id``.

        The current node stays put until the delayed job resumes the execution.
        """
        execution = await self.require_execution(execution_id, org_id)
        if execution.status != ExecutionStatus.RUNNING.value:
            return False

        resume_at = ensure_utc(resume_at)
        await self._swap(execution, resume_at=resume_at)
        await self.queue.enqueue_at(DelayedNodeJob(
            execution_id=execution_id,
            org_id=org_id,
            node_id=next_node_id,
            resume_at=resume_at,
        ))

        logger.info("Workflow delayed",
                    execution_id=execution_id,
                    next_node_id=next_node_id,
                    resume_at=resume_at.isoformat())
        return True

    async def resume_workflow(self, execution_id: str, org_id: str, node_id: str,
                              attempt: int = 1) -> bool:
        """Handle a due delayed job: enqueue ``node_id`` if still running.

        Retries of a failed node come through here too, with ``attempt`` > 1.
        """
        execution = await self.get_execution(execution_id, org_id)
        if execution is None:
            logger.warning("Resume skipped, execution missing", execution_id=execution_id)
            return False
        if execution.status != ExecutionStatus.RUNNING.value:
            logger.info("Resume skipped, execution not running",
                        execution_id=execution_id, status=execution.status)
            return False

        await self._swap(execution, current_node_id=node_id, resume_at=None)
        await self.queue.enqueue_now(NodeJob(
            execution_id=execution_id,
            org_id=org_id,
            lead_id=execution.lead_id,
            conversation_id=execution.conversation_id,
            node_id=node_id,
            attempt=attempt,
        ))
        logger.info("Workflow resumed", execution_id=execution_id, node_id=node_id, attempt=attempt)
        return True

    async def handle_workflow_failure(self, execution_id: str, org_id: str, error: str) -> bool:
        """Mark a running execution failed. No further nodes are dispatched."""
        execution = await self.get_execution(execution_id, org_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING.value:
            return False

        await self._swap(execution, status=ExecutionStatus.FAILED.value, last_error=error[:MAX_ERROR_LENGTH])
        logger.error("Workflow failed", execution_id=execution_id, error=error)
        return True

    async def record_node_failure(self, execution_id: str, org_id: str, error: str,
                                  max_attempts: int) -> bool:
        """Count a failed node attempt, failing the execution when exhausted.

        Returns:
            True if the job should be redelivered
        """
        execution = await self.get_execution(execution_id, org_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING.value:
            return False

        attempts = execution.attempts + 1
        changes = {"attempts": attempts, "last_error": error[:MAX_ERROR_LENGTH]}
        exhausted = attempts >= max_attempts
        if exhausted:
            changes["status"] = ExecutionStatus.FAILED.value

        await self._swap(execution, **changes)

        if exhausted:
            logger.error("Workflow failed after retries",
                         execution_id=execution_id, attempts=attempts, error=error)
        else:
            logger.warning("Node attempt failed",
                           execution_id=execution_id, attempts=attempts, error=error)
        return not exhausted

    async def terminate_for_engagement(self, execution: WorkflowExecutionRecord) -> None:
        """CAS a running execution to terminated_engaged.

        Raises:
            ConcurrentModificationError: The execution moved since it was read
        """
        await self._swap(execution, status=ExecutionStatus.TERMINATED_ENGAGED.value, resume_at=None)
        logger.info("Workflow terminated by engagement", execution_id=execution.id)

    # =========================================================================
    # STEP LOG
    # =========================================================================

    async def log_step(self, execution_id: str, org_id: str, node_id: str, node_type: str,
                       status: StepStatus, branch: Optional[str] = None,
                       error: Optional[str] = None) -> None:
        await self.database.add_step_execution(WorkflowStepExecutionRecord(
            workflow_execution_id=execution_id,
            org_id=org_id,
            node_id=node_id,
            node_type=node_type,
            status=status.value,
            branch=branch,
            error=error[:MAX_ERROR_LENGTH] if error else None,
        ))

    # =========================================================================
    # INTERNAL
    # =========================================================================

    async def _swap(self, execution: WorkflowExecutionRecord, **changes) -> None:
        swapped = await self.database.compare_and_swap_execution(
            execution.id, execution.org_id, execution.version, **changes
        )
        if not swapped:
            raise ConcurrentModificationError(execution.id, execution.version)
