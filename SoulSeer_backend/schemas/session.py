from pydantic import BaseModel, Field
from decimal import Decimal
from datetime import datetime
from typing import Literal, Optional


class SessionStartRequest(BaseModel):
    reader_id: str
    type: Literal["chat", "voice", "video"] = "chat"
    # informational only; the billed rate is read from the reader profile
    rate_per_minute: Optional[Decimal] = None


class SessionResponse(BaseModel):
    id: str
    client_id: str
    reader_id: str
    type: str
    status: str
    rate_per_minute: Decimal
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None
    total_cost: Optional[Decimal] = None
    reader_earnings: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    end_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReviewCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class ReviewResponse(BaseModel):
    id: int
    session_id: str
    client_id: str
    reader_id: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
