from sqlalchemy import Column, Integer, String, Boolean
from app.database import Base

LEDGER_SYMBOL = "LU"

class Currency(Base):
    __tablename__ = "currencies"

    id = Column(Integer, primary_key=True)
    symbol = Column(String(20), nullable=False)           # "USDC", "SOL", "USDT-TRC20", "LU"
    name = Column(String(64), nullable=True)
    blockchain = Column(String(20), nullable=False)       # "solana", "tron", "lu"
    contract_address = Column(String(64), nullable=True)  # SPL mint / TRC20 contract, null for native
    decimals = Column(Integer, default=6, nullable=False)
    is_native = Column(Boolean, default=False, nullable=False)
    deposit = Column(Boolean, default=True, nullable=False)
    withdrawal = Column(Boolean, default=True, nullable=False)
    status = Column(Boolean, default=True, nullable=False)
