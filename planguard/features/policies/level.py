from planguard.features.policies.base import PolicyContext, PolicyResult, as_number, display_number


class LevelPolicy:
    """Ranked tier: the plan's level must reach the level the call site requires."""

    needs_usage = False

    def evaluate(self, context: PolicyContext) -> PolicyResult:
        user_level = as_number(context.value)
        required_level = as_number(context.metadata.get("requiredLevel"))
        metadata = {
            "userLevel": display_number(user_level),
            "requiredLevel": display_number(required_level),
        }
        if user_level >= required_level:
            return PolicyResult.allow(metadata)
        return PolicyResult.deny(
            f"Requires level {display_number(required_level)}, you have level {display_number(user_level)}",
            metadata,
        )
