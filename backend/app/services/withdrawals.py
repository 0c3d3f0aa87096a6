"""
Withdrawal requests.

The LU amount is deducted when the request is created and refunded when it is
rejected or canceled, each in the same transaction as the Payment status
change. Conditional status updates make a second reject/cancel a conflict
instead of a second refund.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models.currency import Currency
from app.models.payment import Payment, PaymentStatus
from app.services.ledger import balance_update, get_ledger_balance
from app.services.pricing import get_spot_price

logger = logging.getLogger(__name__)

CRYPTO_QUANT = Decimal("0.000000001")


async def request_withdrawal(db: AsyncSession, user_id: int, currency_id: int, amount_lu: Decimal, address: str) -> Payment:
    amount_lu = Decimal(amount_lu).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if amount_lu <= 0:
        raise ValidationError("Invalid withdrawal amount")
    address = (address or "").strip()
    if not address:
        raise ValidationError("Address is required")

    currency = await db.get(Currency, currency_id)
    if not currency or not currency.withdrawal or not currency.status or currency.blockchain == "lu":
        raise ValidationError(f"Currency with id {currency_id} is not found or not withdrawable")
    currency_id, symbol, blockchain = currency.id, currency.symbol, currency.blockchain

    price = await get_spot_price(symbol)
    crypto_amount = (amount_lu / price).quantize(CRYPTO_QUANT, rounding=ROUND_HALF_UP)

    balance = await get_ledger_balance(db, user_id)
    payment = Payment(
        user_id=user_id,
        balance_id=balance.id,
        currency_id=currency_id,
        ipn_type="withdrawal",
        method=blockchain,
        amount=crypto_amount,
        fiat_amount=amount_lu,
        status=PaymentStatus.withdrawal_pending,
        status_text="pending",
        address=address,
        data={"symbol": symbol, "price": str(price)},
    )
    db.add(payment)
    await db.flush()
    try:
        await balance_update(db, balance.id, -amount_lu, "withdrawal-pending", payment_id=payment.id)
    except Exception:
        await db.rollback()
        raise
    await db.commit()
    await db.refresh(payment)
    logger.info("[withdrawal] request %d: %s LU -> %s %s, balance deducted", payment.id, amount_lu, crypto_amount, symbol)
    return payment


async def _refund(db: AsyncSession, payment_id: int, reason: str, status_text: str, user_id=None) -> Payment:
    payment = await db.get(Payment, payment_id)
    if not payment or payment.ipn_type != "withdrawal" or (user_id is not None and payment.user_id != user_id):
        raise NotFoundError("Withdrawal not found")

    res = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.withdrawal_pending)
        .values(status=PaymentStatus.withdrawal_canceled, status_text=status_text)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        raise ConflictError("Withdrawal is no longer pending")

    await balance_update(db, payment.balance_id, Decimal(payment.fiat_amount), reason, payment_id=payment_id)
    await db.commit()
    await db.refresh(payment)
    logger.info("[withdrawal] %d %s, %s LU refunded", payment_id, status_text, payment.fiat_amount)
    return payment


async def reject_withdrawal(db: AsyncSession, payment_id: int) -> Payment:
    return await _refund(db, payment_id, "withdrawal-rejected", "rejected")


async def cancel_withdrawal(db: AsyncSession, user_id: int, payment_id: int) -> Payment:
    return await _refund(db, payment_id, "withdrawal-canceled", "canceled", user_id=user_id)


async def list_transactions(db: AsyncSession, user_id: int, limit: int = 20) -> list[Payment]:
    return list(await db.scalars(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
    ))
