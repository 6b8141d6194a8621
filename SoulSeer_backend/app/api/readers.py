import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import current_user_id, get_ledger
from app.errors import ReaderNotFound
from app.security import require_admin, require_own_reader, require_user
from app.services.ledger import BalanceLedger, get_reader_fresh
from app.utils.money import to_money
from models.reader import Reader
from models.review import Review
from schemas.reader import (
    OnboardResponse,
    OnboardStatusResponse,
    PayoutResponse,
    ReaderEarningsResponse,
    ReaderRatesUpdate,
    ReaderResponse,
    ReaderStatusUpdate,
)
from schemas.session import ReviewResponse

router = APIRouter()
logger = logging.getLogger("soulseer.readers")


@router.get("", response_model=List[ReaderResponse])
async def list_readers(online: Optional[bool] = None, db: AsyncSession = Depends(get_db)):
    """Approved readers, best rated first; `online` narrows to readers taking sessions."""
    stmt = select(Reader).where(Reader.is_approved.is_(True))
    if online is not None:
        stmt = stmt.where(Reader.is_online == online)
    rows = await db.execute(stmt.order_by(Reader.rating.desc(), Reader.created_at))
    return rows.scalars().all()


@router.get("/me", response_model=ReaderEarningsResponse)
async def my_reader_profile(user_id: str = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    return await require_own_reader(db, user_id)


@router.post("/me/onboard", response_model=OnboardResponse)
async def start_onboarding(
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    reader = await require_own_reader(db, user_id)
    return OnboardResponse(url=await ledger.start_onboarding(reader.id))


@router.get("/me/onboard/status", response_model=OnboardStatusResponse)
async def onboarding_status(
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    reader = await require_own_reader(db, user_id)
    onboarded = await ledger.refresh_onboarding(reader.id)
    return OnboardStatusResponse(onboarded=onboarded, account_id=reader.payout_account_id)


@router.post("/me/payout", response_model=PayoutResponse)
async def request_payout(
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    ledger: BalanceLedger = Depends(get_ledger),
):
    reader = await require_own_reader(db, user_id)
    tx = await ledger.payout(reader.id)
    return PayoutResponse(success=True, amount=-to_money(tx.amount), transfer_id=tx.reference_id)


@router.get("/{reader_id}", response_model=ReaderResponse)
async def get_reader(reader_id: str, db: AsyncSession = Depends(get_db)):
    reader = await db.get(Reader, reader_id)
    if not reader:
        raise ReaderNotFound()
    return reader


@router.get("/{reader_id}/reviews", response_model=List[ReviewResponse])
async def reader_reviews(reader_id: str, db: AsyncSession = Depends(get_db)):
    if await db.get(Reader, reader_id) is None:
        raise ReaderNotFound()
    rows = await db.execute(
        select(Review).where(Review.reader_id == reader_id).order_by(Review.created_at.desc(), Review.id.desc())
    )
    return rows.scalars().all()


@router.patch("/{reader_id}/status", response_model=ReaderResponse)
async def update_status(
    reader_id: str,
    payload: ReaderStatusUpdate,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    reader = await get_reader_fresh(db, reader_id)
    user = await require_user(db, user_id)
    if reader.user_id != user.id and user.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    reader.is_online = payload.is_online
    await db.commit()
    await db.refresh(reader)
    logger.info("READER_STATUS reader=%s online=%s by=%s", reader_id, payload.is_online, user_id)
    return reader


@router.patch("/{reader_id}/rates", response_model=ReaderResponse)
async def update_rates(
    reader_id: str,
    payload: ReaderRatesUpdate,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    reader = await get_reader_fresh(db, reader_id)
    if reader.user_id != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    # running sessions keep the rate they were started with
    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(reader, field, to_money(value))
    await db.commit()
    await db.refresh(reader)
    return reader


@router.patch("/{reader_id}/approve", response_model=ReaderResponse)
async def approve_reader(
    reader_id: str,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    await require_admin(db, user_id)
    reader = await get_reader_fresh(db, reader_id)
    reader.is_approved = True
    await db.commit()
    await db.refresh(reader)
    return reader
