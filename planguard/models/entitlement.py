"""
planguard/models/entitlement.py

Entitlement definitions and the value shapes each type accepts.
"""

import re
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict


class EntitlementType(str, Enum):
    """Type tag deciding which policy evaluates an entitlement."""
    COUNTER = "counter"
    BOOLEAN = "boolean"
    FREQUENCY = "frequency"
    LEVEL = "level"


WINDOW_PATTERN = re.compile(r"^(\d+)([smhd])$")


class Entitlement(BaseModel):
    """
    A named feature capability.

    Examples:
    - quiz (counter): quizzes per billing period
    - aiTutor (boolean): access to the AI tutor
    - apiRateLimit (frequency): {"limit": 100, "window": "1h"}
    - accessLevel (level): ranked content tier
    """
    model_config = ConfigDict(frozen=True)

    entitlement_id: str
    key: str
    name: str
    type: EntitlementType
    description: Optional[str] = None


def validate_entitlement_value(entitlement_type: EntitlementType, value: Any) -> Any:
    """
    Check that a plan value matches its entitlement type.

    Counter/Level take a non-negative number, Boolean a bool, Frequency a
    {"limit", "window"} object. Returns the value unchanged; raises ValueError.
    """
    if entitlement_type in (EntitlementType.COUNTER, EntitlementType.LEVEL):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"{entitlement_type.value} value must be a non-negative number")
        return value
    if entitlement_type == EntitlementType.BOOLEAN:
        if not isinstance(value, bool):
            raise ValueError("boolean value must be true or false")
        return value
    if entitlement_type == EntitlementType.FREQUENCY:
        if not isinstance(value, dict):
            raise ValueError("frequency value must be an object with limit and window")
        limit = value.get("limit")
        if isinstance(limit, bool) or not isinstance(limit, (int, float)) or limit < 0:
            raise ValueError("frequency limit must be a non-negative number")
        window = value.get("window")
        if window is not None and not (isinstance(window, str) and WINDOW_PATTERN.match(window)):
            raise ValueError("frequency window must look like 30s, 15m, 1h or 7d")
        return value
    raise ValueError(f"Unknown entitlement type: {entitlement_type}")
