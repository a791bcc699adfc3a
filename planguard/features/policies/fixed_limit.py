from planguard.features.policies.base import PolicyContext, PolicyResult, as_number, display_number


class FixedLimitPolicy:
    """Consumable quota: allowed while used < limit."""

    needs_usage = True

    def evaluate(self, context: PolicyContext) -> PolicyResult:
        limit = as_number(context.value)
        used = as_number(context.current_usage)
        remaining = max(0.0, limit - used)
        metadata = {
            "limit": display_number(limit),
            "used": display_number(used),
            "remaining": display_number(remaining),
        }
        if used < limit:
            return PolicyResult.allow(metadata)
        return PolicyResult.deny(f"Limit of {display_number(limit)} reached", metadata)
