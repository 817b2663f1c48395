"""Centralized constants for node types, output keys and engine defaults."""

from typing import FrozenSet, Tuple

# =============================================================================
# BUILT-IN NODE TYPES
# =============================================================================

# Nodes that forward their resolved inputs unchanged
PASSTHROUGH_TYPES: FrozenSet[str] = frozenset([
    'manualTrigger',
    'trigger',
    'passthrough',
    'textInput',
    'textOutput',
    'chatOutput',
])

# Nodes whose output selects active downstream branches
GATEWAY_TYPES: FrozenSet[str] = frozenset([
    'gateway',
    'ifElse',
    'booleanGateway',
])

# =============================================================================
# OUTPUT KEYS
# =============================================================================

# Gateway outputs carry the active branch label(s), comma-separated
ACTIVE_BRANCHES_KEYS: Tuple[str, ...] = ('active_branches', 'activeBranches')

SKIP_REASON_BRANCH_NOT_ACTIVE = 'branch_not_active'

# =============================================================================
# SCHEDULING DEFAULTS
# =============================================================================

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_CONCURRENT_JOBS = 5

# dependency_order priority weights (lower runs sooner)
PRIORITY_DEPENDENCY_WEIGHT = 10
PRIORITY_INPUT_BONUS = -50
PRIORITY_OUTPUT_PENALTY = 50

# =============================================================================
# EVENTS
# =============================================================================

PIPELINE_EVENTS: FrozenSet[str] = frozenset([
    'pipeline.created',
    'pipeline.started',
    'pipeline.paused',
    'pipeline.resumed',
    'pipeline.completed',
    'pipeline.failed',
    'pipeline.cancelled',
])

JOB_EVENTS: FrozenSet[str] = frozenset([
    'job.created',
    'job.started',
    'job.completed',
    'job.failed',
    'job.skipped',
])


def get_active_branches(output) -> str:
    """Return the active-branch string from a node output, or '' if absent."""
    if not isinstance(output, dict):
        return ''
    for key in ACTIVE_BRANCHES_KEYS:
        value = output.get(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            return ','.join(str(v) for v in value)
        return str(value)
    return ''


def has_active_branches(output) -> bool:
    """Check whether an output declares gateway branch state."""
    return isinstance(output, dict) and any(key in output for key in ACTIVE_BRANCHES_KEYS)
