from pydantic import BaseModel, Field
from decimal import Decimal
from datetime import datetime
from typing import List, Optional


class BalanceResponse(BaseModel):
    balance: Decimal


class TransactionResponse(BaseModel):
    id: int
    type: str
    amount: Decimal
    description: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    balance: Decimal
    transactions: List[TransactionResponse]


class DepositRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    # client-generated; resending the same id reuses the checkout
    request_id: Optional[str] = Field(default=None, min_length=8, max_length=64)


class DepositResponse(BaseModel):
    url: str


class DepositConfirmRequest(BaseModel):
    session_id: str


class DepositConfirmResponse(BaseModel):
    success: bool
    balance: Decimal
    transaction: TransactionResponse
