"""Placeholder substitution for SMS_TEMPLATE bodies."""

import re
from typing import Any, Dict

from services.execution.conditions import as_text, get_nested_value

# {{lead.firstName}}, {{lead.metadata.campaign}}
PLACEHOLDER_PATTERN = re.compile(r"\{\{lead\.([a-zA-Z0-9_.]+)\}\}")


def resolve_template(template: str, lead: Dict[str, Any]) -> str:
    """Replace ``{{lead.path}}`` placeholders with values from the lead.

    Placeholders whose path does not resolve, or resolves to None, are left
    verbatim so a missing field is visible in the outgoing text.
    """
    def _replace(match: re.Match) -> str:
        value = get_nested_value(lead, match.group(1))
        if value is None:
            return match.group(0)
        return as_text(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)
