"""Control flow node handlers - Start, End, Condition, Delay."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger
from constants import BRANCH_FALSE, BRANCH_TRUE
from models.workflow import WorkflowDefinition, WorkflowNode, get_next_node_id
from services.execution.conditions import evaluate_condition
from services.execution.delays import calculate_resume_time
from services.execution.models import NodeContext, NodeOutcome

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


async def load_lead(database: "Database", context: NodeContext) -> Dict[str, Any]:
    """Load the execution's lead or fail the node."""
    lead = await database.get_lead(context.org_id, context.lead_id)
    if lead is None:
        raise LookupError(f"Lead not found: {context.lead_id}")
    return lead


async def handle_start(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    context: NodeContext
) -> NodeOutcome:
    """START has no side effect; follow its single outgoing edge."""
    return NodeOutcome(next_node_id=get_next_node_id(definition, node.id))


async def handle_end(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    context: NodeContext
) -> NodeOutcome:
    """END completes the execution."""
    logger.info("Reached END node",
                execution_id=context.execution_id,
                node_id=node.id,
                reason=node.config.reason or "completed")
    return NodeOutcome(next_node_id=None, data={"reason": node.config.reason or "completed"})


async def handle_condition(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    context: NodeContext,
    database: "Database"
) -> NodeOutcome:
    """Evaluate the condition against the lead and follow the matching branch.

    Args:
        node: CONDITION node
        definition: Definition the node belongs to
        context: Execution identity
        database: Database used to read the lead

    Returns:
        Outcome with ``branch`` set to "true" or "false"
    """
    config = node.config
    lead = await load_lead(database, context)

    matched = evaluate_condition(config.field, config.operator, config.value, lead)
    branch = BRANCH_TRUE if matched else BRANCH_FALSE

    logger.info("Condition evaluated",
                execution_id=context.execution_id,
                node_id=node.id,
                field=config.field,
                operator=config.operator,
                branch=branch)
    return NodeOutcome(next_node_id=get_next_node_id(definition, node.id, branch), branch=branch)


async def handle_delay(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    context: NodeContext,
    clock: Optional[Callable[[], datetime]] = None
) -> NodeOutcome:
    """Compute the resume time; the executor schedules the delayed job."""
    now = clock() if clock else datetime.now(timezone.utc)
    resume_at = calculate_resume_time(node.config, now)
    return NodeOutcome(next_node_id=get_next_node_id(definition, node.id), resume_at=resume_at)
