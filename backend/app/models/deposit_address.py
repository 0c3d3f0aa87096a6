from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base

class DepositAddress(Base):
    __tablename__ = "deposit_addresses"
    __table_args__ = (
        UniqueConstraint("user_id", "blockchain", name="uq_deposit_addresses_user_chain"),
        UniqueConstraint("blockchain", "index", name="uq_deposit_addresses_chain_index"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    blockchain = Column(String(20), nullable=False)
    index = Column(Integer, nullable=False)
    address = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="deposit_addresses")


class Counter(Base):
    """Number of derivation indices handed out per counter name."""
    __tablename__ = "counters"
    __table_args__ = (CheckConstraint("value >= 0", name="ck_counters_value_non_negative"),)

    id = Column(Integer, primary_key=True)
    name = Column(String(64), unique=True, nullable=False)   # "solana_deposit_index"
    value = Column(Integer, default=0, nullable=False)
