"""Structural and graph validation for workflow definitions.

Validation runs five independent passes and accumulates every issue instead
of stopping at the first one:

1. Structure: exactly one START and one END, unique node and edge ids
2. Node config: type-specific required fields
3. Edges: endpoints exist, per-type outgoing cardinality and labels
4. Connectivity: every node reachable from START, END reachable
5. Acyclicity: no directed cycles (reported once)
"""

from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from constants import (
    BRANCH_FALSE,
    BRANCH_LABELS,
    BRANCH_TRUE,
    CONDITION,
    CONDITION_OPERATORS,
    DELAY,
    DELAY_UNITS,
    END,
    SINGLE_EXIT_NODE_TYPES,
    SMS_AI,
    SMS_TEMPLATE,
    START,
    TEMPERATURE_MAX,
    TEMPERATURE_MIN,
    UNARY_CONDITION_OPERATORS,
)
from core.logging import get_logger
from models.workflow import (
    BusinessHours,
    ConditionConfig,
    DelayConfig,
    SmsAiConfig,
    SmsTemplateConfig,
    WorkflowGraph,
    WorkflowNode,
    get_outgoing_edges,
)
from services.execution.delays import parse_clock

logger = get_logger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ValidationIssue:
    """A single validation problem, optionally pinned to a node or edge."""
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.node_id is not None:
            data["node_id"] = self.node_id
        if self.edge_id is not None:
            data["edge_id"] = self.edge_id
        return data


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def codes(self) -> List[str]:
        return [issue.code for issue in self.errors]

    def add(self, code: str, message: str, node_id: Optional[str] = None,
            edge_id: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(code, message, node_id, edge_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
        }


# =============================================================================
# ENTRY POINTS
# =============================================================================

def validate_definition(graph: WorkflowGraph) -> ValidationResult:
    """Validate a parsed definition graph.

    Args:
        graph: Definition (or bare graph) with typed node configs

    Returns:
        ValidationResult with every issue found across all passes
    """
    result = ValidationResult()

    _validate_structure(graph, result)
    for node in graph.nodes:
        _validate_node_config(node, result)
    _validate_edges(graph, result)
    _validate_connectivity(graph, result)
    _validate_acyclic(graph, result)

    if not result.is_valid:
        logger.debug("Workflow definition invalid",
                     error_count=len(result.errors),
                     codes=sorted(set(result.codes)))
    return result


def validate_definition_payload(payload: Dict[str, Any]) -> ValidationResult:
    """Validate an untrusted ``{nodes, edges}`` payload.

    Shape errors that prevent parsing (unknown node type, wrong field types)
    are reported as INVALID_SCHEMA issues rather than raised.
    """
    try:
        graph = WorkflowGraph.model_validate(
            {"nodes": payload.get("nodes") or [], "edges": payload.get("edges") or []}
        )
    except ValidationError as e:
        return _schema_errors(payload, e)
    return validate_definition(graph)


def _schema_errors(payload: Dict[str, Any], error: ValidationError) -> ValidationResult:
    result = ValidationResult()
    nodes = payload.get("nodes") or []
    edges = payload.get("edges") or []

    for item in error.errors():
        loc = item.get("loc", ())
        if item.get("type") == "union_tag_invalid":
            # Already reported against the node's own type field
            continue

        code = "INVALID_SCHEMA"
        if len(loc) >= 3 and loc[0] == "nodes":
            code = "UNKNOWN_NODE_TYPE" if loc[2] == "type" else "INVALID_CONFIG"

        node_id = edge_id = None
        if len(loc) >= 2 and isinstance(loc[1], int):
            if loc[0] == "nodes" and loc[1] < len(nodes) and isinstance(nodes[loc[1]], dict):
                node_id = nodes[loc[1]].get("id")
            elif loc[0] == "edges" and loc[1] < len(edges) and isinstance(edges[loc[1]], dict):
                edge_id = edges[loc[1]].get("id")
        path = ".".join(str(part) for part in loc)
        result.add(code, f"{path}: {item.get('msg')}", node_id=node_id, edge_id=edge_id)

    return result


# =============================================================================
# PASS 1: STRUCTURE
# =============================================================================

def _validate_structure(graph: WorkflowGraph, result: ValidationResult) -> None:
    type_counts = Counter(node.type for node in graph.nodes)

    if type_counts[START] == 0:
        result.add("MISSING_START", "Workflow must have a START node")
    elif type_counts[START] > 1:
        result.add("MULTIPLE_START", "Workflow must have exactly one START node")

    if type_counts[END] == 0:
        result.add("MISSING_END", "Workflow must have an END node")
    elif type_counts[END] > 1:
        result.add("MULTIPLE_END", "Workflow must have exactly one END node")

    for node_id, count in Counter(node.id for node in graph.nodes).items():
        if count > 1:
            result.add("DUPLICATE_NODE_ID", f"Duplicate node id: {node_id}", node_id=node_id)

    for edge_id, count in Counter(edge.id for edge in graph.edges).items():
        if count > 1:
            result.add("DUPLICATE_EDGE_ID", f"Duplicate edge id: {edge_id}", edge_id=edge_id)


# =============================================================================
# PASS 2: NODE CONFIG
# =============================================================================

def _validate_node_config(node: WorkflowNode, result: ValidationResult) -> None:
    config = node.config

    if isinstance(config, SmsTemplateConfig):
        if not config.template.strip():
            result.add("MISSING_TEMPLATE", "SMS template node requires a template", node_id=node.id)

    elif isinstance(config, SmsAiConfig):
        temperature = config.temperature
        if temperature is not None and not TEMPERATURE_MIN <= temperature <= TEMPERATURE_MAX:
            result.add("INVALID_TEMPERATURE",
                       f"Temperature must be between {TEMPERATURE_MIN} and {TEMPERATURE_MAX}",
                       node_id=node.id)

    elif isinstance(config, DelayConfig):
        if config.duration is None or config.duration <= 0:
            result.add("INVALID_DELAY_DURATION", "Delay duration must be greater than 0", node_id=node.id)
        if config.unit not in DELAY_UNITS:
            result.add("INVALID_DELAY_UNIT",
                       f"Delay unit must be one of: {', '.join(sorted(DELAY_UNITS))}",
                       node_id=node.id)
        if config.respect_business_hours:
            problem = _business_hours_problem(config.business_hours or BusinessHours())
            if problem:
                result.add("INVALID_BUSINESS_HOURS", problem, node_id=node.id)

    elif isinstance(config, ConditionConfig):
        if not config.field.strip():
            result.add("MISSING_CONDITION_FIELD", "Condition node requires a field", node_id=node.id)
        if config.operator not in CONDITION_OPERATORS:
            result.add("INVALID_CONDITION_OPERATOR",
                       f"Invalid condition operator: {config.operator or '<empty>'}",
                       node_id=node.id)
        elif config.operator not in UNARY_CONDITION_OPERATORS and not config.value:
            result.add("MISSING_CONDITION_VALUE",
                       f"Operator {config.operator} requires a comparison value",
                       node_id=node.id)


def _business_hours_problem(hours: BusinessHours) -> Optional[str]:
    """Describe what is wrong with a business-hours window, or None."""
    try:
        start = parse_clock(hours.start)
        end = parse_clock(hours.end)
    except ValueError as e:
        return str(e)

    if start >= end:
        return "Business hours start must be before end"
    if not hours.days_of_week:
        return "Business hours must include at least one day"
    if any(day < 0 or day > 6 for day in hours.days_of_week):
        return "Business days must be between 0 (Sunday) and 6 (Saturday)"

    try:
        ZoneInfo(hours.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return f"Unknown timezone: {hours.timezone}"
    return None


# =============================================================================
# PASS 3: EDGES
# =============================================================================

def _validate_edges(graph: WorkflowGraph, result: ValidationResult) -> None:
    node_ids = {node.id for node in graph.nodes}

    for edge in graph.edges:
        if edge.source not in node_ids:
            result.add("INVALID_EDGE_SOURCE", f"Edge source does not exist: {edge.source}", edge_id=edge.id)
        if edge.target not in node_ids:
            result.add("INVALID_EDGE_TARGET", f"Edge target does not exist: {edge.target}", edge_id=edge.id)

    for node in graph.nodes:
        outgoing = get_outgoing_edges(graph, node.id)

        if node.type == END:
            if outgoing:
                result.add("END_NODE_HAS_OUTGOING", "END node must not have outgoing edges", node_id=node.id)

        elif node.type in SINGLE_EXIT_NODE_TYPES:
            if not outgoing:
                result.add("MISSING_OUTGOING_EDGE",
                           f"{node.type} node must have one outgoing edge", node_id=node.id)
            elif len(outgoing) > 1:
                result.add("TOO_MANY_OUTGOING_EDGES",
                           f"{node.type} node must have exactly one outgoing edge", node_id=node.id)
            for edge in outgoing:
                if edge.label:
                    result.add("UNEXPECTED_EDGE_LABEL",
                               f"Only CONDITION edges may carry a label, got {edge.label!r}",
                               node_id=node.id, edge_id=edge.id)

        elif node.type == CONDITION:
            if len(outgoing) != 2:
                result.add("INVALID_CONDITION_EDGES",
                           "CONDITION node must have exactly two outgoing edges", node_id=node.id)
            labels = {edge.label for edge in outgoing}
            for edge in outgoing:
                if edge.label not in BRANCH_LABELS:
                    result.add("UNEXPECTED_EDGE_LABEL",
                               f"CONDITION edges must be labeled 'true' or 'false', got {edge.label!r}",
                               node_id=node.id, edge_id=edge.id)
            if BRANCH_TRUE not in labels:
                result.add("MISSING_TRUE_BRANCH", "CONDITION node is missing its 'true' edge", node_id=node.id)
            if BRANCH_FALSE not in labels:
                result.add("MISSING_FALSE_BRANCH", "CONDITION node is missing its 'false' edge", node_id=node.id)


# =============================================================================
# PASS 4: CONNECTIVITY
# =============================================================================

def _build_adjacency(graph: WorkflowGraph) -> Dict[str, List[str]]:
    node_ids = {node.id for node in graph.nodes}
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in graph.edges:
        if edge.source in node_ids and edge.target in node_ids:
            adjacency[edge.source].append(edge.target)
    return adjacency


def _validate_connectivity(graph: WorkflowGraph, result: ValidationResult) -> None:
    start_nodes = [node for node in graph.nodes if node.type == START]
    end_nodes = [node for node in graph.nodes if node.type == END]
    if not start_nodes or not end_nodes:
        return

    adjacency = _build_adjacency(graph)
    visited: Set[str] = {start_nodes[0].id}
    queue = deque([start_nodes[0].id])

    while queue:
        current = queue.popleft()
        for target in adjacency[current]:
            if target not in visited:
                visited.add(target)
                queue.append(target)

    if not any(node.id in visited for node in end_nodes):
        result.add("NO_PATH_TO_END", "END node is not reachable from START")

    reported: Set[str] = set()
    for node in graph.nodes:
        if node.id not in visited and node.id not in reported:
            reported.add(node.id)
            result.add("ORPHAN_NODE", f"Node is not reachable from START: {node.id}", node_id=node.id)


# =============================================================================
# PASS 5: ACYCLICITY
# =============================================================================

def _validate_acyclic(graph: WorkflowGraph, result: ValidationResult) -> None:
    """Depth-first search with an explicit recursion stack."""
    adjacency = _build_adjacency(graph)
    visited: Set[str] = set()
    on_stack: Set[str] = set()

    for root in (node.id for node in graph.nodes):
        if root in visited:
            continue

        visited.add(root)
        on_stack.add(root)
        stack = [(root, iter(adjacency[root]))]

        while stack:
            current, children = stack[-1]
            child = next(children, None)

            if child is None:
                on_stack.discard(current)
                stack.pop()
            elif child in on_stack:
                result.add("CYCLE_DETECTED",
                           f"Workflow contains a cycle through {child}", node_id=current)
                return
            elif child not in visited:
                visited.add(child)
                on_stack.add(child)
                stack.append((child, iter(adjacency[child])))
