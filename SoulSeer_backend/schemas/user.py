from pydantic import BaseModel
from decimal import Decimal
from datetime import datetime
from typing import Optional


class UserSummary(BaseModel):
    id: str
    username: str
    full_name: Optional[str] = None
    role: str

    class Config:
        from_attributes = True


class AdminUserResponse(UserSummary):
    email: str
    balance: Decimal
    created_at: Optional[datetime] = None
