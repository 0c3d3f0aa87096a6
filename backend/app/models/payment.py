from sqlalchemy import Column, Integer, String, Numeric, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func
import enum
from app.database import Base


class PaymentStatus(enum.IntEnum):
    withdrawal_canceled = -1
    withdrawal_pending = -2
    pending = 0
    withdrawal_sent = 2
    confirmed = 100


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    txn_id = Column(String(128), unique=True, nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    balance_id = Column(Integer, ForeignKey("balances.id"), nullable=True)
    currency_id = Column(Integer, ForeignKey("currencies.id"), nullable=False)
    ipn_type = Column(String(20), nullable=False)   # "deposit" / "withdrawal"
    method = Column(String(20), nullable=True)      # "solana" / "tron"
    amount = Column(Numeric(30, 9), nullable=False, default=0)        # chain units
    fiat_amount = Column(Numeric(20, 2), nullable=False, default=0)   # ledger units
    status = Column(Integer, nullable=False, default=PaymentStatus.pending)
    status_text = Column(String(32), nullable=True)
    address = Column(String(64), nullable=True)
    from_address = Column(String(64), nullable=True)
    bonus_id = Column(Integer, ForeignKey("bonuses.id"), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
