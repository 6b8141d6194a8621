from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import current_user_id, get_ledger
from app.services.ledger import BalanceLedger, get_balance
from schemas.wallet import (
    BalanceResponse,
    DepositConfirmRequest,
    DepositConfirmResponse,
    DepositRequest,
    DepositResponse,
    TransactionResponse,
    WalletResponse,
)

router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
async def wallet_balance(user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    return BalanceResponse(balance=await get_balance(db, user_id))


@router.get("/transactions", response_model=WalletResponse)
async def get_transactions(
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    balance = await get_balance(db, user_id)
    transactions = await ledger.list_transactions(db, user_id)
    return WalletResponse(
        balance=balance,
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
    )


@router.post("/deposit", response_model=DepositResponse)
async def create_deposit(
    payload: DepositRequest,
    user_id: str = Depends(current_user_id),
    ledger: BalanceLedger = Depends(get_ledger),
):
    url = await ledger.create_deposit(user_id, payload.amount, payload.request_id)
    return DepositResponse(url=url)


@router.post("/deposit/confirm", response_model=DepositConfirmResponse)
async def confirm_deposit(
    payload: DepositConfirmRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    tx = await ledger.confirm_deposit(user_id, payload.session_id)
    return DepositConfirmResponse(
        success=True,
        balance=await get_balance(db, user_id),
        transaction=TransactionResponse.model_validate(tx),
    )
