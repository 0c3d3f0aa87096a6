from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, Text, ForeignKey
from sqlalchemy.sql import func
import enum
from app.database import Base


class SweepStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


class Sweep(Base):
    __tablename__ = "sweeps"

    id = Column(Integer, primary_key=True)
    blockchain = Column(String(20), nullable=False)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    address_id = Column(Integer, ForeignKey("deposit_addresses.id"), nullable=True)
    index = Column(Integer, nullable=False)
    from_address = Column(String(64), nullable=False)
    to_address = Column(String(64), nullable=False)
    asset = Column(String(64), nullable=False)            # "SOL", SPL mint, "TRX", "USDT", "USDC"
    contract_address = Column(String(64), nullable=True)
    amount_ui = Column(Numeric(30, 9), nullable=False)
    txid = Column(String(128), unique=True, nullable=False, index=True)   # signature on Solana
    status = Column(Enum(SweepStatus), default=SweepStatus.pending, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
