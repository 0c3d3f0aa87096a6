from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.core.chains import get_solana_client, get_tron_client
from app.core.deps import get_current_user
from app.core.errors import ValidationError
from app.core.redis import deposit_rate_limit
from app.models.currency import Currency
from app.models.payment import Payment
from app.models.user import User
from app.schemas.payment import DepositRequest, WithdrawalRequest
from app.services.deposit_addresses import allocate_deposit_address
from app.services.deposits import DepositResult, scan_solana_deposits, verify_solana_deposit, verify_tron_deposit
from app.services.hd_wallet import SOLANA, TRON
from app.services.solana import SolanaClient
from app.services.tron import TronClient
from app.services import withdrawals

router = APIRouter(prefix="/api/payments", tags=["payments"])


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "txn_id": p.txn_id,
        "ipn_type": p.ipn_type,
        "method": p.method,
        "currency_id": p.currency_id,
        "amount": str(p.amount),
        "fiat_amount": float(p.fiat_amount),
        "status": p.status,
        "status_text": p.status_text,
        "address": p.address,
        "from_address": p.from_address,
        "bonus_id": p.bonus_id,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _deposit_response(result: DepositResult) -> dict:
    return {
        "message": "Transaction already confirmed" if result.already_processed else "Deposit confirmed successfully",
        "already_processed": result.already_processed,
        "lu_amount": float(result.lu_amount),
        "payment": payment_to_dict(result.payment),
    }


@router.post("/deposit", dependencies=[Depends(deposit_rate_limit)])
async def deposit(
    body: DepositRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    solana: SolanaClient = Depends(get_solana_client),
    tron: TronClient = Depends(get_tron_client),
):
    """Verify and credit a deposit; the chain is taken from the currency."""
    currency = await db.get(Currency, body.currency_id)
    if not currency:
        raise ValidationError("Currency not found")
    if currency.blockchain == SOLANA:
        result = await verify_solana_deposit(db, user, solana, body.currency_id, body.txn_id, body.from_address, body.bonus_id)
    elif currency.blockchain == TRON:
        result = await verify_tron_deposit(db, user, tron, body.currency_id, body.txn_id, body.from_address, body.bonus_id)
    else:
        raise ValidationError(f"Deposits on {currency.blockchain} are not supported")
    return _deposit_response(result)


@router.post("/s-deposit", dependencies=[Depends(deposit_rate_limit)])
async def deposit_solana(
    body: DepositRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    solana: SolanaClient = Depends(get_solana_client),
):
    result = await verify_solana_deposit(db, user, solana, body.currency_id, body.txn_id, body.from_address, body.bonus_id)
    return _deposit_response(result)


@router.post("/t-deposit", dependencies=[Depends(deposit_rate_limit)])
async def deposit_tron(
    body: DepositRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tron: TronClient = Depends(get_tron_client),
):
    result = await verify_tron_deposit(db, user, tron, body.currency_id, body.txn_id, body.from_address, body.bonus_id)
    return _deposit_response(result)


@router.api_route("/solana/deposit-address", methods=["GET", "POST"])
async def solana_deposit_address(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    record = await allocate_deposit_address(db, user.id, SOLANA)
    return {"blockchain": record.blockchain, "address": record.address, "index": record.index}


@router.api_route("/tron/deposit-address", methods=["GET", "POST"])
async def tron_deposit_address(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    record = await allocate_deposit_address(db, user.id, TRON)
    return {"blockchain": record.blockchain, "address": record.address, "index": record.index}


@router.post("/solana/check-deposits")
async def check_solana_deposits(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    solana: SolanaClient = Depends(get_solana_client),
):
    """Scan the user's recent Solana signatures and credit any unseen deposits."""
    return await scan_solana_deposits(db, user, solana)


@router.post("/withdrawal")
async def request_withdrawal(
    body: WithdrawalRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payment = await withdrawals.request_withdrawal(db, user.id, body.currency_id, body.amount, body.address)
    return {
        "message": "Withdrawal request submitted successfully",
        "withdrawal_id": payment.id,
        "lu_amount": float(payment.fiat_amount),
        "crypto_amount": str(payment.amount),
        "status": "pending",
    }


@router.post("/withdrawal/{payment_id}/cancel")
async def cancel_withdrawal(
    payment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payment = await withdrawals.cancel_withdrawal(db, user.id, payment_id)
    return {"message": "Withdrawal canceled", "payment": payment_to_dict(payment)}


@router.get("/transactions")
async def transactions(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return [payment_to_dict(p) for p in await withdrawals.list_transactions(db, user.id)]
