from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

ADMIN_ROLES = ("admin", "super_admin")


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str = "user"
    email: Optional[str] = None
    display_name: Optional[str] = None
    is_premium: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES
