"""Condition evaluation for CONDITION nodes.

Reads a value from the lead record by dot path and compares it with the
node's comparison value to pick the "true" or "false" branch.

Supported operators:
- equals: Value rendered as text equals the comparison value
- not_equals: Inverse of equals
- contains: Value rendered as text contains the comparison value
- not_contains: Inverse of contains (a missing value does not contain anything)
- exists: Value is present and not None
- not_exists: Value is missing or None
"""

from typing import Dict, Any, Optional

from core.logging import get_logger

logger = get_logger(__name__)

LEAD_PREFIX = "lead."


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: Dictionary to extract value from
        field_path: Dot-separated path (e.g., "status", "metadata.campaign", "tags.0")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"metadata": {"campaign": "spring"}}, "metadata.campaign")
        'spring'
        >>> get_nested_value({"tags": ["hot"]}, "tags.0")
        'hot'
    """
    if not data or not field_path:
        return None

    current = data

    for part in field_path.split('.'):
        if current is None:
            return None

        # Handle array index
        if part.isdigit():
            index = int(part)
            if isinstance(current, (list, tuple)) and 0 <= index < len(current):
                current = current[index]
            else:
                return None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current


def as_text(value: Any) -> Optional[str]:
    """Render a lead value as comparison text. None stays None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate_condition(field: str, operator: str, value: Optional[str],
                       lead: Dict[str, Any]) -> bool:
    """Evaluate a CONDITION node against a lead record.

    Args:
        field: Dot path into the lead record; a leading "lead." is ignored
        operator: One of the supported operators
        value: Comparison value (unused by exists/not_exists)
        lead: Lead record as a dict

    Returns:
        True if the condition holds, False otherwise
    """
    if field.startswith(LEAD_PREFIX):
        field = field[len(LEAD_PREFIX):]

    actual = get_nested_value(lead, field)
    result = _evaluate_operator(operator, actual, value)

    logger.debug("Evaluated condition",
                 field=field,
                 operator=operator,
                 target=value,
                 actual=actual,
                 result=result)
    return result


def _evaluate_operator(operator: str, actual: Any, target: Optional[str]) -> bool:
    """Evaluate a single operator."""
    text = as_text(actual)
    expected = "" if target is None else target

    if operator == "equals":
        return text is not None and text == expected

    elif operator == "not_equals":
        return not _evaluate_operator("equals", actual, target)

    elif operator == "contains":
        return text is not None and expected in text

    elif operator == "not_contains":
        return not _evaluate_operator("contains", actual, target)

    elif operator == "exists":
        return actual is not None

    elif operator == "not_exists":
        return actual is None

    logger.warning("Unknown condition operator", operator=operator)
    return False
