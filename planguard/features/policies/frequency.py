"""
Rate limit over a sliding lookback window.

The window is re-evaluated on every call: events recorded at or after
`now - window` are counted, so capacity frees up as old events age out.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from planguard.features.policies.base import PolicyContext, PolicyResult, as_number, display_number
from planguard.models.entitlement import WINDOW_PATTERN

DEFAULT_WINDOW = "1h"

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

# (user_id, feature_key, window_start) -> events counted since window_start
WindowCounter = Callable[[str, str, datetime], float]


def parse_window(window: Any) -> timedelta:
    """Parse "30s" / "15m" / "1h" / "7d"; anything else falls back to one hour."""
    match = WINDOW_PATTERN.match(window) if isinstance(window, str) else None
    if not match:
        return timedelta(hours=1)
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


class FrequencyPolicy:
    needs_usage = False

    def __init__(self, count_in_window: WindowCounter):
        self.count_in_window = count_in_window

    def evaluate(self, context: PolicyContext) -> PolicyResult:
        config = context.value if isinstance(context.value, dict) else {}
        limit = as_number(config.get("limit"))
        window = config.get("window") or DEFAULT_WINDOW
        window_start = context.now - parse_window(window)

        count = as_number(self.count_in_window(context.user_id, context.feature_key, window_start))
        metadata = {
            "limit": display_number(limit),
            "used": display_number(count),
            "remaining": display_number(max(0.0, limit - count)),
            "window": window,
        }
        if count < limit:
            return PolicyResult.allow(metadata)
        return PolicyResult.deny(f"Rate limit exceeded: {display_number(limit)} per {window}", metadata)
