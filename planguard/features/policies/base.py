"""
Shared contract for enforcement policies.

A policy is a stateless evaluator: given the configured entitlement value,
the caller's current usage and optional call-site metadata, it decides
whether the action is allowed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol


@dataclass(frozen=True)
class PolicyContext:
    user_id: str
    feature_key: str
    value: Any
    now: datetime
    current_usage: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PolicyResult:
    allowed: bool
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def allow(cls, metadata: Optional[Dict[str, Any]] = None) -> "PolicyResult":
        return cls(allowed=True, metadata=metadata)

    @classmethod
    def deny(cls, reason: str, metadata: Optional[Dict[str, Any]] = None) -> "PolicyResult":
        return cls(allowed=False, reason=reason, metadata=metadata)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


class EnforcementPolicy(Protocol):
    # True when the engine must load the running usage counter first
    needs_usage: bool

    def evaluate(self, context: PolicyContext) -> PolicyResult:
        ...


def as_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def display_number(value: float):
    """Render 5.0 as 5 in reasons and metadata."""
    return int(value) if float(value).is_integer() else value
