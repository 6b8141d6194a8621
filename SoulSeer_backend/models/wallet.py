from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Text
from sqlalchemy.sql import func
from app.database import Base


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    type = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)  # negative = debit
    description = Column(Text, nullable=True)
    reference_id = Column(String, index=True, nullable=True)
    reference_type = Column(String, nullable=True)  # session|stripe_checkout|stripe_transfer
    created_at = Column(DateTime(timezone=True), server_default=func.now())
