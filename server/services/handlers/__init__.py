"""Node handlers package.

One async handler per node type, organized by category:
- control.py: Start, End, Condition, Delay
- sms.py: SMS Template, SMS AI

Handlers take ``(node, definition, context)`` plus the services they need,
bound via functools.partial in the NodeExecutor registry, and return a
NodeOutcome describing the transition.
"""

from .control import (
    handle_start,
    handle_end,
    handle_condition,
    handle_delay,
)

from .sms import (
    handle_sms_template,
    handle_sms_ai,
    message_idempotency_key,
)

__all__ = [
    'handle_start',
    'handle_end',
    'handle_condition',
    'handle_delay',
    'handle_sms_template',
    'handle_sms_ai',
    'message_idempotency_key',
]
