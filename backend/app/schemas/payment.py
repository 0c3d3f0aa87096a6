from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class DepositRequest(BaseModel):
    currency_id: int = Field(alias="currencyId")
    txn_id: str
    from_address: Optional[str] = Field(default=None, alias="from")
    bonus_id: Optional[int] = Field(default=None, alias="bonusId")

    model_config = {"populate_by_name": True}


class WithdrawalRequest(BaseModel):
    currency_id: int = Field(alias="currency")
    amount: Decimal = Field(gt=0)
    address: str = Field(min_length=1)

    model_config = {"populate_by_name": True}


class SolanaSweepRequest(BaseModel):
    user_id: Optional[int] = Field(default=None, alias="userId")
    index: Optional[int] = Field(default=None, ge=0)
    mint: Optional[str] = None               # None sweeps native SOL
    amount_ui: Optional[Decimal] = Field(default=None, alias="amountUi", gt=0)
    to_address: Optional[str] = Field(default=None, alias="toAddress")

    model_config = {"populate_by_name": True}


class TronSweepRequest(BaseModel):
    user_id: Optional[int] = Field(default=None, alias="userId")
    index: Optional[int] = Field(default=None, ge=0)
    symbol: str
    amount_ui: Optional[Decimal] = Field(default=None, alias="amountUi", gt=0)

    model_config = {"populate_by_name": True}
