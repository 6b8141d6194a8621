from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import current_user_id
from app.security import require_admin
from models.reader import Reader
from models.session import ReadingSession
from models.user import User
from schemas.reader import ReaderEarningsResponse
from schemas.session import SessionResponse
from schemas.user import AdminUserResponse

router = APIRouter()


@router.get("/users", response_model=List[AdminUserResponse])
async def list_users(
    role: Optional[Literal["client", "reader", "admin"]] = None,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    await require_admin(db, user_id)
    stmt = select(User)
    if role:
        stmt = stmt.where(User.role == role)
    rows = await db.execute(stmt.order_by(User.created_at.desc(), User.id))
    return rows.scalars().all()


@router.get("/readers", response_model=List[ReaderEarningsResponse])
async def list_readers(
    approved: Optional[bool] = None,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    # includes readers still waiting for approval
    await require_admin(db, user_id)
    stmt = select(Reader)
    if approved is not None:
        stmt = stmt.where(Reader.is_approved == approved)
    rows = await db.execute(stmt.order_by(Reader.created_at.desc(), Reader.id))
    return rows.scalars().all()


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(
    status: Optional[Literal["pending", "active", "completed", "cancelled"]] = None,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    await require_admin(db, user_id)
    stmt = select(ReadingSession)
    if status:
        stmt = stmt.where(ReadingSession.status == status)
    rows = await db.execute(stmt.order_by(ReadingSession.created_at.desc(), ReadingSession.started_at.desc()))
    return rows.scalars().all()
