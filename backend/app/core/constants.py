"""Application-wide constants for the Smiling Steps platform."""

from __future__ import annotations

BRAND_NAME = "Smiling Steps"

# Prometheus metric prefix
METRICS_NAMESPACE = "smilingsteps"

# Session duration constraints
MIN_SESSION_DURATION = 30  # minutes
MAX_SESSION_DURATION = 240  # minutes (4 hours)

# Alternative slot search window used when a booking conflicts
ALTERNATIVE_SLOT_SEARCH_DAYS = 7
ALTERNATIVE_SLOT_FIRST_HOUR = 9
ALTERNATIVE_SLOT_LAST_HOUR = 17
DEFAULT_MAX_ALTERNATIVES = 3

# Monitor read-model limits
DASHBOARD_RECENT_LIMIT = 20
RECENT_VIOLATION_WINDOW_SECONDS = 3600

# Mid-session refund tiers: (completion percentage upper bound, refund percentage)
# Upper bounds are exclusive, so a boundary value falls into the next tier.
MID_SESSION_REFUND_TIERS: tuple[tuple[int, int], ...] = (
    (25, 75),
    (50, 50),
    (75, 25),
)

# Stuck states are those older than this multiple of their expected duration
STUCK_STATE_MULTIPLIER = 2
