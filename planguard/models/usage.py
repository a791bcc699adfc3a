"""
planguard/models/usage.py

Usage counters.
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict


class UsageRecord(BaseModel):
    """
    Running consumption of one feature by one user.

    Values may be fractional (storage in MB). `reset_at` is the next
    scheduled reset, nominally one month after the last reset.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    feature_key: str
    current_value: float
    reset_at: datetime

