"""Messaging node handlers - SMS Template, SMS AI."""

import uuid
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger
from constants import (
    MESSAGE_CHANNEL,
    MESSAGE_DIRECTION_OUTBOUND,
    MESSAGE_STATUS_PENDING,
    SENDER_AI,
    SENDER_WORKFLOW,
)
from models.database import Message
from models.workflow import WorkflowDefinition, WorkflowNode, get_next_node_id
from services.execution.models import NodeContext, NodeOutcome
from services.execution.templates import resolve_template
from services.handlers.control import load_lead

if TYPE_CHECKING:
    from core.database import Database
    from services.generation import GenerationService

logger = get_logger(__name__)


def message_idempotency_key(execution_id: str, node_id: str) -> str:
    """One message per node per execution; definitions are acyclic."""
    return f"{execution_id}:{node_id}"


async def send_outbound_message(
    database: "Database",
    node: WorkflowNode,
    context: NodeContext,
    body: str,
    sender: str,
    extra_metadata: Optional[Dict[str, Any]] = None
) -> bool:
    """Create a pending outbound SMS for the execution's lead.

    Returns:
        False if this node already produced a message for the execution
    """
    idempotency_key = message_idempotency_key(context.execution_id, node.id)
    if await database.get_message_by_idempotency_key(idempotency_key) is not None:
        logger.info("Outbound message already queued",
                    execution_id=context.execution_id,
                    node_id=node.id,
                    attempt=context.attempt)
        return False

    metadata = {
        "workflowExecutionId": context.execution_id,
        "nodeId": node.id,
        "nodeType": node.type,
        **(extra_metadata or {}),
    }
    message = Message(
        id=str(uuid.uuid4()),
        org_id=context.org_id,
        lead_id=context.lead_id,
        conversation_id=context.conversation_id,
        message_type=MESSAGE_CHANNEL,
        channel=MESSAGE_CHANNEL,
        direction=MESSAGE_DIRECTION_OUTBOUND,
        sender=sender,
        body=body,
        status=MESSAGE_STATUS_PENDING,
        metadata_=metadata,
        idempotency_key=idempotency_key,
    )
    created = await database.create_message(message)

    logger.info("Outbound message queued" if created else "Outbound message already queued",
                execution_id=context.execution_id,
                node_id=node.id,
                sender=sender,
                lead_id=context.lead_id)
    return created


async def handle_sms_template(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    context: NodeContext,
    database: "Database"
) -> NodeOutcome:
    """Render the template against the lead and queue the message.

    Args:
        node: SMS_TEMPLATE node
        definition: Definition the node belongs to
        context: Execution identity
        database: Database used to read the lead and write the message

    Returns:
        Outcome following the single outgoing edge
    """
    lead = await load_lead(database, context)
    body = resolve_template(node.config.template, lead)
    created = await send_outbound_message(database, node, context, body, SENDER_WORKFLOW)
    return NodeOutcome(next_node_id=get_next_node_id(definition, node.id), data={"created": created})


async def handle_sms_ai(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    context: NodeContext,
    database: "Database",
    generation_service: "GenerationService"
) -> NodeOutcome:
    """Ask the generation service for a message and queue it.

    A failed generation is not a node failure: the step succeeds and the
    workflow advances without sending.
    """
    config = node.config
    hints: Dict[str, Any] = {
        "workflowId": definition.id,
        "workflowVersion": definition.version,
        "nodeId": node.id,
    }
    if config.system_prompt:
        hints["systemPrompt"] = config.system_prompt
    if config.temperature is not None:
        hints["temperature"] = config.temperature
    if config.prompt_overrides:
        hints["promptOverrides"] = config.prompt_overrides.model_dump(exclude_none=True)
    if config.fallback_template:
        hints["fallbackTemplate"] = config.fallback_template

    result = await generation_service.generate(
        context.org_id, context.lead_id, context.conversation_id, hints
    )

    created = False
    if result.success and result.text:
        created = await send_outbound_message(
            database, node, context, result.text, SENDER_AI, {"tier": result.tier}
        )
    else:
        logger.warning("AI generation produced no message",
                       execution_id=context.execution_id,
                       node_id=node.id,
                       tier=result.tier,
                       error=result.error)

    return NodeOutcome(
        next_node_id=get_next_node_id(definition, node.id),
        data={"created": created, "tier": result.tier, "generated": result.success},
    )
