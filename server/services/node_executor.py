"""Node Executor - Single node execution with handler dispatch.

Uses a registry pattern for clean handler dispatch without if-else chains.
Every node type runs inside the same envelope:

1. Load the execution; a terminal execution gets a success step and nothing else
2. Load the definition and find the node
3. Run the node handler (the side effect)
4. Append a success step
5. Advance the execution, or schedule the delayed resume
6. On failure, append an error step and re-raise
"""

import time
from datetime import datetime
from functools import partial
from typing import Callable, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger, log_execution_time
from constants import CONDITION, DELAY, END, NODE_TYPES, SMS_AI, SMS_TEMPLATE, START, UNKNOWN_NODE_TYPE
from models.workflow import WorkflowDefinition, find_node
from services.execution.errors import (
    NodeExecutorError,
    NodeNotFoundError,
    WorkflowEngineError,
)
from services.execution.models import (
    ExecutionStatus,
    NodeContext,
    NodeJob,
    NodeOutcome,
    StepStatus,
)
from services.handlers import (
    handle_condition,
    handle_delay,
    handle_end,
    handle_sms_ai,
    handle_sms_template,
    handle_start,
)

if TYPE_CHECKING:
    from core.database import Database
    from services.execution.runtime import WorkflowRuntime
    from services.generation import GenerationService

logger = get_logger(__name__)


class NodeExecutor:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(
        self,
        database: "Database",
        runtime: "WorkflowRuntime",
        generation_service: "GenerationService",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.database = database
        self.runtime = runtime
        self.generation_service = generation_service
        self.clock = clock
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Callable]:
        """Build handler registry with service dependencies bound via partial."""
        return {
            # Workflow control
            START: handle_start,
            END: handle_end,
            CONDITION: partial(handle_condition, database=self.database),
            DELAY: partial(handle_delay, clock=self.clock),
            # Messaging
            SMS_TEMPLATE: partial(handle_sms_template, database=self.database),
            SMS_AI: partial(handle_sms_ai, database=self.database,
                            generation_service=self.generation_service),
        }

    async def execute(self, job: NodeJob) -> Optional[NodeOutcome]:
        """Run one node job through the common envelope.

        Args:
            job: Immediate job naming the execution and node

        Returns:
            The handler's outcome, or None when the execution was already terminal

        Raises:
            ExecutionNotFoundError: The execution row does not exist
            DefinitionNotFoundError: The execution's definition is gone
            NodeNotFoundError: The node is not part of the definition
            ConcurrentModificationError: Another writer won the transition
            NodeExecutorError: The node's side effect failed
        """
        start_time = time.time()
        execution = await self.runtime.require_execution(job.execution_id, job.org_id)
        node_type = UNKNOWN_NODE_TYPE

        try:
            if execution.status != ExecutionStatus.RUNNING.value:
                node_type = await self._lookup_node_type(execution.workflow_definition_id, job)
                await self.runtime.log_step(job.execution_id, job.org_id, job.node_id,
                                            node_type, StepStatus.SUCCESS)
                logger.info("Skipping node, execution not running",
                            execution_id=job.execution_id,
                            node_id=job.node_id,
                            status=execution.status)
                return None

            definition = await self.runtime.get_definition(execution.workflow_definition_id, job.org_id)
            node = find_node(definition, job.node_id)
            if node is None:
                raise NodeNotFoundError(job.node_id, definition.id)
            node_type = node.type

            outcome = await self._dispatch(node, definition, NodeContext.from_job(job))

            await self.runtime.log_step(job.execution_id, job.org_id, node.id, node_type,
                                        StepStatus.SUCCESS, branch=outcome.branch)
            await self._transition(job, outcome)

            log_execution_time(logger, "node_execution", start_time, time.time(),
                               execution_id=job.execution_id, node_id=node.id, node_type=node_type)
            return outcome

        except Exception as e:
            await self._log_error_step(job, node_type, e)
            raise

    async def _dispatch(self, node, definition: WorkflowDefinition, context: NodeContext) -> NodeOutcome:
        """Run the registered handler, wrapping side-effect failures."""
        handler = self._handlers.get(node.type)
        if handler is None:
            raise NodeExecutorError(node.id, node.type, "no handler registered")

        try:
            return await handler(node, definition, context)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise NodeExecutorError(node.id, node.type, str(e)) from e

    async def _transition(self, job: NodeJob, outcome: NodeOutcome) -> None:
        if outcome.resume_at is not None and outcome.next_node_id is not None:
            await self.runtime.schedule_delay(job.execution_id, job.org_id,
                                              outcome.next_node_id, outcome.resume_at)
        else:
            await self.runtime.advance_workflow(job.execution_id, job.org_id, job.node_id,
                                                outcome.next_node_id, outcome.branch)

    async def _lookup_node_type(self, definition_id: str, job: NodeJob) -> str:
        record = await self.database.get_definition(definition_id, job.org_id)
        if record is None:
            return UNKNOWN_NODE_TYPE
        for node in record.nodes or []:
            if node.get("id") == job.node_id:
                node_type = node.get("type")
                return node_type if node_type in NODE_TYPES else UNKNOWN_NODE_TYPE
        return UNKNOWN_NODE_TYPE

    async def _log_error_step(self, job: NodeJob, node_type: str, error: Exception) -> None:
        """Best-effort error step; the original error is what propagates."""
        try:
            await self.runtime.log_step(job.execution_id, job.org_id, job.node_id,
                                        node_type, StepStatus.ERROR, error=str(error))
        except Exception as log_error:
            logger.error("Failed to record error step",
                         execution_id=job.execution_id,
                         node_id=job.node_id,
                         error=str(log_error))
