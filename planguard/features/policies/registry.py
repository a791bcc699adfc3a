"""
Exhaustive mapping from entitlement type to policy.

Every EntitlementType member must have a builder; the module refuses to
import otherwise, and an unknown type at runtime raises instead of
falling back to a permissive default.
"""

from typing import Any, Callable, Dict

from planguard.core.errors import ConfigurationError
from planguard.features.policies.base import EnforcementPolicy
from planguard.features.policies.boolean import BooleanPolicy
from planguard.features.policies.fixed_limit import FixedLimitPolicy
from planguard.features.policies.frequency import FrequencyPolicy, WindowCounter
from planguard.features.policies.level import LevelPolicy
from planguard.models.entitlement import EntitlementType

_BUILDERS: Dict[EntitlementType, Callable[[WindowCounter], EnforcementPolicy]] = {
    EntitlementType.COUNTER: lambda counter: FixedLimitPolicy(),
    EntitlementType.BOOLEAN: lambda counter: BooleanPolicy(),
    EntitlementType.FREQUENCY: lambda counter: FrequencyPolicy(counter),
    EntitlementType.LEVEL: lambda counter: LevelPolicy(),
}

_unmapped = set(EntitlementType) - set(_BUILDERS)
if _unmapped:
    raise RuntimeError(f"No policy registered for entitlement types: {sorted(t.value for t in _unmapped)}")


class UnknownEntitlementTypeError(ConfigurationError):
    code = "unknown_entitlement_type"


class PolicyRegistry:
    """Policy instances for one window counter, one per entitlement type."""

    def __init__(self, count_in_window: WindowCounter):
        self._policies = {etype: build(count_in_window) for etype, build in _BUILDERS.items()}

    def policy_for(self, entitlement_type: Any) -> EnforcementPolicy:
        try:
            etype = EntitlementType(entitlement_type)
        except ValueError:
            raise UnknownEntitlementTypeError(f"Unknown entitlement type: {entitlement_type!r}")
        return self._policies[etype]
