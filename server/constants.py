"""Centralized constants for node types, run modes and trigger defaults.

This module provides a single source of truth for node type strings so the
registry, the trigger manager and the routers never drift apart.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

MANUAL_TRIGGER_TYPE = 'manualTrigger'
WEBHOOK_TRIGGER_TYPE = 'webhookTrigger'
SCHEDULE_TRIGGER_TYPE = 'scheduleTrigger'

WORKFLOW_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER_TYPE,
    WEBHOOK_TRIGGER_TYPE,
    SCHEDULE_TRIGGER_TYPE,
])

# Trigger nodes whose parameters are turned into persistent registrations
# by TriggerManager.refresh_triggers()
REGISTERED_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    WEBHOOK_TRIGGER_TYPE,
    SCHEDULE_TRIGGER_TYPE,
])

# =============================================================================
# ACTION NODE TYPES
# =============================================================================

DATA_NODE_TYPES: FrozenSet[str] = frozenset([
    'setFields',
    'merge',
    'noOp',
])

UTILITY_NODE_TYPES: FrozenSet[str] = frozenset([
    'console',
    'wait',
])

HTTP_TYPES: FrozenSet[str] = frozenset([
    'httpRequest',
])

ALL_BUILTIN_NODE_TYPES: FrozenSet[str] = (
    WORKFLOW_TRIGGER_TYPES |
    DATA_NODE_TYPES |
    UTILITY_NODE_TYPES |
    HTTP_TYPES
)

# =============================================================================
# PORTS, RUN MODES, WEBHOOKS
# =============================================================================

DEFAULT_PORT = 'main'

RUN_MODES: FrozenSet[str] = frozenset(['manual', 'webhook', 'schedule'])

WEBHOOK_METHODS: FrozenSet[str] = frozenset(['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])

WEBHOOK_AUTH_TYPES: FrozenSet[str] = frozenset(['none', 'basic', 'bearer', 'header'])

# Used by refresh_triggers() when a scheduleTrigger node has no rule
DEFAULT_CRON_EXPRESSION = '*/5 * * * *'
