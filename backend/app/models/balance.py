from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base

class Balance(Base):
    __tablename__ = "balances"
    __table_args__ = (UniqueConstraint("user_id", "currency_id", name="uq_balances_user_currency"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    currency_id = Column(Integer, ForeignKey("currencies.id"), nullable=False)
    balance = Column(Numeric(precision=20, scale=2), default=0, nullable=False)
    bonus = Column(Numeric(precision=20, scale=2), default=0, nullable=False)
    status = Column(Boolean, default=True, nullable=False)

    user = relationship("User", back_populates="balances")


class BalanceHistory(Base):
    __tablename__ = "balance_history"

    id = Column(Integer, primary_key=True)
    balance_id = Column(Integer, ForeignKey("balances.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(precision=20, scale=2), nullable=False)
    balance_before = Column(Numeric(precision=20, scale=2), nullable=False)
    balance_after = Column(Numeric(precision=20, scale=2), nullable=False)
    reason = Column(String(64), nullable=False)   # "deposit-solana", "withdrawal-request", ...
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
