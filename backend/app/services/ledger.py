"""
Ledger primitive. Every balance mutation goes through ``balance_update``,
which applies the delta atomically in SQL and appends a BalanceHistory row in
the caller's transaction. Callers commit.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConfigurationError, InsufficientBalanceError
from app.models.balance import Balance, BalanceHistory
from app.models.currency import Currency, LEDGER_SYMBOL

logger = logging.getLogger(__name__)


async def get_ledger_currency(db: AsyncSession) -> Currency:
    currency = await db.scalar(select(Currency).where(Currency.symbol == LEDGER_SYMBOL))
    if not currency:
        raise ConfigurationError("Ledger currency LU is not configured")
    return currency


async def get_or_create_balance(db: AsyncSession, user_id: int, currency_id: int) -> Balance:
    balance = await db.scalar(
        select(Balance).where(Balance.user_id == user_id, Balance.currency_id == currency_id)
    )
    if balance:
        return balance
    try:
        balance = Balance(user_id=user_id, currency_id=currency_id, balance=0, bonus=0, status=True)
        db.add(balance)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        balance = await db.scalar(
            select(Balance).where(Balance.user_id == user_id, Balance.currency_id == currency_id)
        )
    return balance


async def get_ledger_balance(db: AsyncSession, user_id: int) -> Balance:
    currency = await get_ledger_currency(db)
    return await get_or_create_balance(db, user_id, currency.id)


async def balance_update(
    db: AsyncSession,
    balance_id: int,
    amount: Decimal,
    reason: str,
    payment_id: Optional[int] = None,
) -> Decimal:
    """Apply a signed delta. Debits never take the balance below zero."""
    amount = Decimal(amount)
    stmt = update(Balance).where(Balance.id == balance_id)
    if amount < 0:
        stmt = stmt.where(Balance.balance >= -amount)
    stmt = (
        stmt.values(balance=Balance.balance + amount)
        .returning(Balance.balance, Balance.user_id)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).one_or_none()
    if row is None:
        raise InsufficientBalanceError("Insufficient balance")

    after = Decimal(row.balance)
    db.add(BalanceHistory(
        balance_id=balance_id,
        user_id=row.user_id,
        amount=amount,
        balance_before=after - amount,
        balance_after=after,
        reason=reason,
        payment_id=payment_id,
    ))
    logger.info("[ledger] balance %d %+f (%s) -> %s", balance_id, amount, reason, after)
    return after


async def bonus_update(db: AsyncSession, balance_id: int, amount: Decimal) -> None:
    await db.execute(
        update(Balance)
        .where(Balance.id == balance_id)
        .values(bonus=Balance.bonus + Decimal(amount))
        .execution_options(synchronize_session=False)
    )
