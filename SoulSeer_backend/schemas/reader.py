from pydantic import BaseModel, Field
from decimal import Decimal
from datetime import datetime
from typing import Optional


class ReaderResponse(BaseModel):
    id: str
    user_id: str
    display_name: str
    about_me: Optional[str] = None
    is_online: bool
    is_approved: bool
    chat_rate: Decimal
    voice_rate: Decimal
    video_rate: Decimal
    total_readings: int
    rating: Optional[Decimal] = None
    review_count: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReaderEarningsResponse(ReaderResponse):
    total_earnings: Decimal
    pending_payout: Decimal
    payout_onboarded: bool


class ReaderStatusUpdate(BaseModel):
    is_online: bool


class ReaderRatesUpdate(BaseModel):
    chat_rate: Optional[Decimal] = Field(default=None, gt=0)
    voice_rate: Optional[Decimal] = Field(default=None, gt=0)
    video_rate: Optional[Decimal] = Field(default=None, gt=0)


class OnboardResponse(BaseModel):
    url: str


class OnboardStatusResponse(BaseModel):
    onboarded: bool
    account_id: Optional[str] = None


class PayoutResponse(BaseModel):
    success: bool
    amount: Decimal
    transfer_id: str
