"""Pydantic models for workflow definitions with discriminated node configs.

A definition is a directed graph: nodes are actions, edges are transitions.
Each node carries a config validated against the model registered for its
type through a Pydantic v2 discriminated union keyed on ``type``.

Config models are intentionally lenient about semantic constraints (missing
template, non-positive duration, unknown operator). Those are reported as
structured issues by ``services.validation`` so that an editor can show every
problem at once instead of failing on the first one.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from constants import (
    DEFAULT_BUSINESS_DAYS,
    DEFAULT_BUSINESS_HOURS_END,
    DEFAULT_BUSINESS_HOURS_START,
    DEFAULT_BUSINESS_TIMEZONE,
    END_REASONS,
)


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeConfig(BaseModel):
    """Base class for all node configs."""
    model_config = {"extra": "allow", "populate_by_name": True}

    label: str = ""


# =============================================================================
# CONTROL NODE CONFIGS
# =============================================================================

class StartConfig(BaseNodeConfig):
    type: Literal["START"]


class EndConfig(BaseNodeConfig):
    type: Literal["END"]
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v):
        if v is not None and v not in END_REASONS:
            raise ValueError(f"reason must be one of {sorted(END_REASONS)}")
        return v


class BusinessHours(BaseModel):
    """Daily send window. ``days_of_week`` uses 0=Sunday .. 6=Saturday."""
    model_config = {"populate_by_name": True}

    start: str = DEFAULT_BUSINESS_HOURS_START
    end: str = DEFAULT_BUSINESS_HOURS_END
    timezone: str = DEFAULT_BUSINESS_TIMEZONE
    days_of_week: List[int] = Field(default_factory=lambda: list(DEFAULT_BUSINESS_DAYS), alias="daysOfWeek")


class DelayConfig(BaseNodeConfig):
    type: Literal["DELAY"]
    duration: Optional[float] = None
    unit: Optional[str] = None
    respect_business_hours: bool = Field(default=False, alias="respectBusinessHours")
    business_hours: Optional[BusinessHours] = Field(default=None, alias="businessHours")


class ConditionConfig(BaseNodeConfig):
    type: Literal["CONDITION"]
    field: str = ""
    operator: str = ""
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v):
        """Comparison values are compared as text."""
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


# =============================================================================
# MESSAGE NODE CONFIGS
# =============================================================================

class SmsTemplateConfig(BaseNodeConfig):
    type: Literal["SMS_TEMPLATE"]
    template: str = ""


class PromptOverrides(BaseModel):
    """Optional hints forwarded to the generation service."""
    model_config = {"extra": "allow"}

    instructions: Optional[str] = None
    goal: Optional[str] = None
    custom: Optional[str] = None


class SmsAiConfig(BaseNodeConfig):
    type: Literal["SMS_AI"]
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    temperature: Optional[float] = None
    prompt_overrides: Optional[PromptOverrides] = Field(default=None, alias="promptOverrides")
    fallback_template: Optional[str] = Field(default=None, alias="fallbackTemplate")


# =============================================================================
# DISCRIMINATED UNION
# =============================================================================

NodeConfig = Annotated[
    Union[
        StartConfig,
        EndConfig,
        SmsTemplateConfig,
        SmsAiConfig,
        DelayConfig,
        ConditionConfig,
    ],
    Field(discriminator="type"),
]

_node_config_adapter = TypeAdapter(NodeConfig)


def validate_node_config(node_type: str, config: Dict[str, Any]) -> BaseNodeConfig:
    """Validate a node config using the model registered for its type.

    Args:
        node_type: The node type string (START, END, SMS_TEMPLATE, ...)
        config: Raw config dictionary, camelCase or snake_case keys

    Returns:
        Validated config model (specific subclass based on node_type)

    Raises:
        ValidationError: If the type is unknown or a field has the wrong shape
    """
    return _node_config_adapter.validate_python({**(config or {}), "type": node_type})


# =============================================================================
# GRAPH
# =============================================================================

class Position(BaseModel):
    x: float = 0
    y: float = 0


class WorkflowNode(BaseModel):
    """A single action in the graph."""

    id: str
    type: Literal["START", "END", "SMS_TEMPLATE", "SMS_AI", "DELAY", "CONDITION"]
    config: NodeConfig
    position: Position = Field(default_factory=Position)

    @model_validator(mode="before")
    @classmethod
    def inject_config_type(cls, data):
        """Configs inherit the node type so the union can discriminate."""
        if isinstance(data, dict) and "type" in data:
            config = data.get("config")
            if isinstance(config, BaseModel):
                return data
            if config is None:
                config = {}
            if isinstance(config, dict):
                data = dict(data)
                data["config"] = {**config, "type": data["type"]}
            # Anything else is left for the union to reject as a config error
        return data


class WorkflowEdge(BaseModel):
    """A transition between two nodes. Labels are only used by CONDITION."""

    id: str
    source: str
    target: str
    label: Optional[str] = None


class WorkflowGraph(BaseModel):
    """Nodes and edges of a definition."""
    model_config = {"populate_by_name": True}

    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)


class WorkflowDefinition(WorkflowGraph):
    """A versioned, tenant-scoped workflow definition."""

    id: str
    org_id: str = Field(alias="orgId")
    name: str
    description: Optional[str] = None
    industry: Optional[str] = None
    is_active: bool = Field(default=False, alias="isActive")
    version: int = 1
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


# =============================================================================
# GRAPH HELPERS
# =============================================================================

def find_node(graph: WorkflowGraph, node_id: str) -> Optional[WorkflowNode]:
    """Return the node with ``node_id`` or None."""
    for node in graph.nodes:
        if node.id == node_id:
            return node
    return None


def find_start_node(graph: WorkflowGraph) -> Optional[WorkflowNode]:
    for node in graph.nodes:
        if node.type == "START":
            return node
    return None


def get_outgoing_edges(graph: WorkflowGraph, node_id: str) -> List[WorkflowEdge]:
    return [edge for edge in graph.edges if edge.source == node_id]


def get_next_node_id(graph: WorkflowGraph, node_id: str,
                     branch_label: Optional[str] = None) -> Optional[str]:
    """Resolve the target of a node's outgoing edge.

    Args:
        graph: Definition graph
        node_id: Source node
        branch_label: For CONDITION nodes, the "true"/"false" edge label

    Returns:
        Target node id, or None when there is no matching edge
    """
    outgoing = get_outgoing_edges(graph, node_id)
    if not outgoing:
        return None

    if branch_label is not None:
        for edge in outgoing:
            if edge.label == branch_label:
                return edge.target
        return None

    return outgoing[0].target
