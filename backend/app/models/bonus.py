from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from app.database import Base


class Bonus(Base):
    __tablename__ = "bonuses"

    id = Column(Integer, primary_key=True)
    title = Column(String(100), nullable=False)
    amount_type = Column(String(20), nullable=False, default="fixed")   # fixed / percentage / cashback
    amount = Column(Numeric(20, 2), nullable=False, default=0)
    up_to_amount = Column(Numeric(20, 2), nullable=True)
    deposit_amount_from = Column(Numeric(20, 2), nullable=False, default=0)
    deposit_amount_to = Column(Numeric(20, 2), nullable=True)
    spend_amount = Column(Numeric(20, 2), nullable=False, default=0)
    wager = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(Boolean, default=True, nullable=False)


class BonusHistory(Base):
    __tablename__ = "bonus_history"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    bonus_id = Column(Integer, ForeignKey("bonuses.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    amount = Column(Numeric(20, 2), nullable=False)
    deposit_amount = Column(Numeric(20, 2), nullable=False)
    wager_amount = Column(Numeric(20, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
