import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.bonus import Bonus, BonusHistory
from app.models.payment import Payment
from app.services.ledger import bonus_update

logger = logging.getLogger(__name__)


def calculate_bonus_amount(bonus: Bonus, deposit_lu: Decimal) -> Optional[Decimal]:
    """Bonus owed for a deposit, or None when the deposit is outside the bonus range."""
    deposit_lu = Decimal(deposit_lu)
    if bonus.deposit_amount_from is not None and deposit_lu < bonus.deposit_amount_from:
        return None
    if bonus.deposit_amount_to is not None and deposit_lu > bonus.deposit_amount_to:
        return None

    if bonus.amount_type == "percentage":
        amount = (deposit_lu * Decimal(bonus.amount) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if bonus.up_to_amount and amount > bonus.up_to_amount:
            amount = Decimal(bonus.up_to_amount)
        return amount
    # fixed and cashback both grant the configured amount
    return Decimal(bonus.amount)


async def apply_deposit_bonus(db: AsyncSession, payment: Payment) -> Optional[BonusHistory]:
    """
    Record the bonus a confirmed deposit qualifies for.
    Bonuses without a spend requirement are credited to Balance.bonus immediately,
    the rest stay 'processing' until the spend requirement is met.
    """
    bonus = await db.get(Bonus, payment.bonus_id)
    if not bonus or not bonus.status:
        logger.info("[deposit-bonus] bonus %s not found or inactive", payment.bonus_id)
        return None

    deposit_lu = Decimal(payment.fiat_amount)
    amount = calculate_bonus_amount(bonus, deposit_lu)
    if amount is None:
        logger.info("[deposit-bonus] %s LU out of range for bonus %d", deposit_lu, bonus.id)
        return None

    immediate = (bonus.spend_amount or 0) <= 0
    status = "active" if immediate else "processing"
    history = await db.scalar(
        select(BonusHistory).where(
            BonusHistory.user_id == payment.user_id,
            BonusHistory.bonus_id == bonus.id,
        )
    )
    if history:
        history.amount = amount
        history.deposit_amount = deposit_lu
        history.payment_id = payment.id
        history.status = status
    else:
        history = BonusHistory(
            user_id=payment.user_id,
            bonus_id=bonus.id,
            payment_id=payment.id,
            amount=amount,
            deposit_amount=deposit_lu,
            wager_amount=bonus.wager or 0,
            status=status,
        )
        db.add(history)

    if immediate and payment.balance_id:
        await bonus_update(db, payment.balance_id, amount)
    await db.commit()
    logger.info("[deposit-bonus] user %d bonus %d: %s LU (%s)", payment.user_id, bonus.id, amount, status)
    return history
