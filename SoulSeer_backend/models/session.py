from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func
from app.database import Base
from models.user import new_id

SESSION_TYPES = ("chat", "voice", "video")

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

END_REASONS = {"user", "disconnect", "balance_exhausted"}


class ReadingSession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    client_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    reader_id = Column(String, ForeignKey("readers.id"), index=True, nullable=False)
    type = Column(String, nullable=False)  # chat|voice|video
    status = Column(String, index=True, nullable=False, default=STATUS_PENDING)
    rate_per_minute = Column(Numeric(6, 2), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, nullable=True)  # billed minutes
    total_cost = Column(Numeric(10, 2), nullable=True)
    reader_earnings = Column(Numeric(10, 2), nullable=True)
    platform_fee = Column(Numeric(10, 2), nullable=True)
    end_reason = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
