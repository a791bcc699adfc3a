from planguard.features.policies.base import PolicyContext, PolicyResult


class BooleanPolicy:
    """On/off feature flag."""

    needs_usage = False

    def evaluate(self, context: PolicyContext) -> PolicyResult:
        if context.value is True:
            return PolicyResult.allow()
        return PolicyResult.deny("Feature not included in your plan")
