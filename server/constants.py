"""Centralized constants for node types, operators and delay units.

Single source of truth for the string vocabularies shared by the graph model,
the definition validator and the node executors.
"""

from typing import Dict, FrozenSet

# =============================================================================
# NODE TYPES
# =============================================================================

START = 'START'
END = 'END'
SMS_TEMPLATE = 'SMS_TEMPLATE'
SMS_AI = 'SMS_AI'
DELAY = 'DELAY'
CONDITION = 'CONDITION'

NODE_TYPES: FrozenSet[str] = frozenset([
    START,
    END,
    SMS_TEMPLATE,
    SMS_AI,
    DELAY,
    CONDITION,
])

# Nodes that need exactly one unlabeled outgoing edge
SINGLE_EXIT_NODE_TYPES: FrozenSet[str] = frozenset([
    START,
    SMS_TEMPLATE,
    SMS_AI,
    DELAY,
])

UNKNOWN_NODE_TYPE = 'UNKNOWN'

# =============================================================================
# CONDITION OPERATORS AND BRANCHES
# =============================================================================

CONDITION_OPERATORS: FrozenSet[str] = frozenset([
    'equals',
    'not_equals',
    'contains',
    'not_contains',
    'exists',
    'not_exists',
])

# Operators that do not take a comparison value
UNARY_CONDITION_OPERATORS: FrozenSet[str] = frozenset([
    'exists',
    'not_exists',
])

BRANCH_TRUE = 'true'
BRANCH_FALSE = 'false'

BRANCH_LABELS: FrozenSet[str] = frozenset([BRANCH_TRUE, BRANCH_FALSE])

# =============================================================================
# DELAY UNITS
# =============================================================================

DELAY_UNIT_MS: Dict[str, int] = {
    'seconds': 1000,
    'minutes': 60 * 1000,
    'hours': 60 * 60 * 1000,
    'days': 24 * 60 * 60 * 1000,
}

DELAY_UNITS: FrozenSet[str] = frozenset(DELAY_UNIT_MS)

# Business hours roll forward at most this many days before giving up
MAX_BUSINESS_DAY_SEARCH = 14

DEFAULT_BUSINESS_HOURS_START = '09:00'
DEFAULT_BUSINESS_HOURS_END = '17:00'
DEFAULT_BUSINESS_TIMEZONE = 'UTC'
# 0=Sunday .. 6=Saturday
DEFAULT_BUSINESS_DAYS = (1, 2, 3, 4, 5)

# =============================================================================
# END REASONS
# =============================================================================

END_REASONS: FrozenSet[str] = frozenset([
    'completed',
    'no_response',
    'engaged',
])

# =============================================================================
# OUTBOUND MESSAGES
# =============================================================================

MESSAGE_CHANNEL = 'sms'
MESSAGE_DIRECTION_OUTBOUND = 'outbound'
MESSAGE_STATUS_PENDING = 'pending'
SENDER_WORKFLOW = 'workflow'
SENDER_AI = 'ai'

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0
