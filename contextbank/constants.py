"""
Application Constants for ContextBank.

Centralizes limits and magic numbers that do not change between environments.
Dynamic configuration (from environment variables) lives in config.py.
"""

# =============================================================================
# Namespaces
# =============================================================================

DEFAULT_NAMESPACE_ID = 0  # Working view; the only namespace other components read
DEFAULT_ARCHIVE_NAMESPACE_ID = -1  # Storage scope of the Default Context while a profile is active
DEFAULT_PROFILE_NAME = "Default Context"
DEFAULT_PROFILE_DESCRIPTION = "Your main research context"

RECORD_KIND_REFERENCE_ITEM = "reference_item"
RECORD_KIND_MESSAGE = "message"
RECORD_KINDS = (RECORD_KIND_REFERENCE_ITEM, RECORD_KIND_MESSAGE)

MAX_PROFILE_NAME_LENGTH = 255

# =============================================================================
# Bounded Context Costs
# =============================================================================

COST_PER_UNLOCK = 0.1
COST_PER_TEACHING = 0.05  # Base cost, before the size-proportional part
COST_PER_TEACHING_KB = 0.01  # Added per KiB of serialized input + learned
COST_PER_UPDATE = 0.05

DEFAULT_TEACHING_CONFIDENCE = 0.8

# =============================================================================
# Complexity Score
# =============================================================================

COMPLEXITY_BYTES_PER_POINT = 10000  # One point per 10KB of serialized payload
COMPLEXITY_PER_RELATIONSHIP = 0.5
COMPLEXITY_PER_SESSION = 0.25
MAX_STRUCTURE_COMPLEXITY = 5.0
STRUCTURE_WEIGHT_PER_KEY = 0.2
STRUCTURE_WEIGHT_PER_ITEM = 0.1

# =============================================================================
# Scheduling
# =============================================================================

SCHEDULE_PERIOD_SECONDS = {
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
}

# =============================================================================
# Chunking
# =============================================================================

TRUNCATION_MARKER = " [TRUNCATED]"
TRUNCATION_RATIO = 0.9  # Keep ~90% of the ceiling before the marker

# =============================================================================
# Cache Keys
# =============================================================================

NETWORK_CACHE_KEY = "contextbank:network"
NETWORK_CACHE_GENERATION_KEY = f"{NETWORK_CACHE_KEY}:generation"  # Bumped on every invalidation
