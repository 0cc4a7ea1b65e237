from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from quillpass.models.subscription import Subscription, UsageCounter


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"  # user | author | admin
    subscription: Subscription = Subscription()
    usage: UsageCounter = UsageCounter()
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name.strip()
        if self.email:
            return self.email.split("@", 1)[0]
        return self.user_id
