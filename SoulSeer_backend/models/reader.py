from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func
from app.database import Base
from models.user import new_id


class Reader(Base):
    __tablename__ = "readers"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=False)
    about_me = Column(Text, nullable=True)
    is_online = Column(Boolean, nullable=False, default=False)
    is_approved = Column(Boolean, nullable=False, default=False)
    chat_rate = Column(Numeric(6, 2), nullable=False, default=Decimal("3.99"))
    voice_rate = Column(Numeric(6, 2), nullable=False, default=Decimal("4.99"))
    video_rate = Column(Numeric(6, 2), nullable=False, default=Decimal("5.99"))
    total_readings = Column(Integer, nullable=False, default=0)
    total_earnings = Column(Numeric(10, 2), nullable=False, default=0)
    pending_payout = Column(Numeric(10, 2), nullable=False, default=0)
    rating = Column(Numeric(3, 2), nullable=True)
    review_count = Column(Integer, nullable=False, default=0)
    payout_account_id = Column(String, nullable=True)
    payout_onboarded = Column(Boolean, nullable=False, default=False)
    # outstanding transfer; kept until its result is recorded so a retry reuses the same key
    payout_attempt_id = Column(String, nullable=True)
    payout_attempt_amount = Column(Numeric(10, 2), nullable=True)
    payout_in_flight = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def rate_for(self, session_type: str) -> Decimal:
        rate = {
            "chat": self.chat_rate,
            "voice": self.voice_rate,
            "video": self.video_rate,
        }[session_type]
        return Decimal(str(rate))
