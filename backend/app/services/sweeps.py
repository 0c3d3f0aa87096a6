"""
Treasury sweeps: move funds from derived deposit addresses to the treasury.

Nothing is written before broadcast. A broadcast that fails outright is
recorded as a failed Sweep under a synthetic id. A successful broadcast is
recorded as pending under its real txid and then marked confirmed or failed
once confirmation settles. Error text passes through
``sanitize_error_message``. A confirmed sweep with the same source,
destination, asset and amount short-circuits a repeated request, and a
duplicate txid after broadcast returns the recorded sweep.
"""
import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConfigurationError,
    DerivationError,
    InsufficientBalanceError,
    InsufficientFeesError,
    NotFoundError,
    SweepFailure,
    ValidationError,
    sanitize_error_message,
)
from app.models.sweep import Sweep, SweepStatus
from app.models.user import User
from app.services.deposit_addresses import get_deposit_address, get_deposit_address_by_index
from app.services.hd_wallet import SOLANA, TRON, derive_address, derive_signing_key, validate_index
from app.services.solana import LAMPORTS_PER_SOL, SolanaClient
from app.services.tron import SUN_PER_TRX, TronClient

logger = logging.getLogger(__name__)

SOLANA_RENT_EXEMPT_RESERVE = Decimal("0.00089")
SOLANA_FEE_ESTIMATE = Decimal("0.0001")
SOLANA_NATIVE_RESERVE = SOLANA_RENT_EXEMPT_RESERVE + SOLANA_FEE_ESTIMATE
TRON_MIN_TRX_FOR_TRC20 = Decimal("1.0")
TRON_SYMBOLS = ("TRX", "USDT", "USDC")
AMOUNT_QUANT = Decimal("0.000000001")


@dataclass
class SweepSource:
    index: int
    address: str
    user_id: Optional[int]
    address_id: Optional[int]


@dataclass
class SweepResult:
    sweep: Sweep
    already_recorded: bool


def categorize_sweep_error(message: str) -> str:
    lowered = message.lower()
    if "insufficient" in lowered or "balance" in lowered:
        return f"Insufficient balance: {message}"
    if "energy" in lowered or "bandwidth" in lowered or "resource" in lowered:
        return f"Insufficient energy/bandwidth: Address needs TRX to pay for transaction fees. {message}"
    if "address" in lowered or "invalid" in lowered:
        return f"Invalid address: {message}"
    if "txid" in lowered or "transaction" in lowered or "signature" in lowered:
        return f"Transaction error: {message}"
    return message


def _quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(AMOUNT_QUANT, rounding=ROUND_DOWN)


async def resolve_source(db: AsyncSession, blockchain: str, user_id: Optional[int], index: Optional[int]) -> SweepSource:
    """By user id the recorded address is used; by index the address is re-derived."""
    if user_id is not None:
        record = await get_deposit_address(db, user_id, blockchain)
        if not record:
            raise NotFoundError(f"No {blockchain} deposit address found for user {user_id}")
        return SweepSource(index=record.index, address=record.address, user_id=record.user_id, address_id=record.id)
    if index is None:
        raise ValidationError("Either user_id or index must be provided")

    validate_index(index)
    derived = derive_address(blockchain, index)
    record = await get_deposit_address_by_index(db, blockchain, index)
    return SweepSource(
        index=index,
        address=derived.address,
        user_id=record.user_id if record else None,
        address_id=record.id if record else None,
    )


def _sweepable(balance: Decimal, reserve: Decimal, requested: Optional[Decimal], unit: str) -> Decimal:
    available = _quantize(max(balance - reserve, Decimal(0)))
    if requested is None:
        amount = available
    else:
        amount = _quantize(requested)
        if amount > available:
            raise InsufficientBalanceError(
                f"Requested {amount} {unit} but only {available} {unit} available "
                f"(after reserving {reserve} {unit} for fees)"
            )
    if amount <= 0:
        raise ValidationError(f"Amount to sweep must be greater than 0 (available: {available} {unit})")
    return amount


async def _find_confirmed(db: AsyncSession, blockchain: str, source: SweepSource, to_address: str, asset: str, amount: Decimal) -> Optional[Sweep]:
    return await db.scalar(
        select(Sweep)
        .where(
            Sweep.blockchain == blockchain,
            Sweep.index == source.index,
            Sweep.from_address == source.address,
            Sweep.to_address == to_address,
            Sweep.asset == asset,
            Sweep.amount_ui == amount,
            Sweep.status == SweepStatus.confirmed,
        )
        .order_by(Sweep.created_at.desc(), Sweep.id.desc())
        .limit(1)
    )


def _signing_key(blockchain: str, source: SweepSource):
    key = derive_signing_key(blockchain, source.index)
    if key.address != source.address:
        raise DerivationError(f"Derived key for index {source.index} does not match the recorded address")
    return key


async def _broadcast(
    db: AsyncSession,
    send,
    confirm,
    *,
    blockchain: str,
    admin_id: int,
    source: SweepSource,
    to_address: str,
    asset: str,
    contract_address: Optional[str],
    amount: Decimal,
) -> SweepResult:
    fields = dict(
        blockchain=blockchain,
        admin_id=admin_id,
        user_id=source.user_id,
        address_id=source.address_id,
        index=source.index,
        from_address=source.address,
        to_address=to_address,
        asset=asset,
        contract_address=contract_address,
        amount_ui=amount,
    )
    try:
        txid = await send()
    except Exception as e:
        message = categorize_sweep_error(sanitize_error_message(e))
        failed = Sweep(
            txid=f"failed_{int(time.time() * 1000)}_{secrets.token_hex(5)}",
            status=SweepStatus.failed,
            error=message,
            **fields,
        )
        db.add(failed)
        await db.commit()
        await db.refresh(failed)
        logger.error("[%s-sweep] index %d -> %s failed: %s", blockchain, source.index, to_address, message)
        raise SweepFailure(message, sweep=failed) from None

    existing = await db.scalar(select(Sweep).where(Sweep.txid == txid))
    if existing:
        return SweepResult(sweep=existing, already_recorded=True)

    # pending until confirmed; a confirmation failure keeps the real txid
    sweep = Sweep(txid=txid, status=SweepStatus.pending, **fields)
    db.add(sweep)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await db.scalar(select(Sweep).where(Sweep.txid == txid))
        return SweepResult(sweep=existing, already_recorded=True)
    sweep_id = sweep.id

    try:
        await confirm(txid)
    except Exception as e:
        message = categorize_sweep_error(sanitize_error_message(e, keep=(txid,)))
        await db.execute(
            update(Sweep)
            .where(Sweep.id == sweep_id)
            .values(status=SweepStatus.failed, error=message)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        failed = await db.get(Sweep, sweep_id, populate_existing=True)
        logger.error("[%s-sweep] %s broadcast but not confirmed: %s", blockchain, txid, message)
        raise SweepFailure(message, sweep=failed) from None

    await db.execute(
        update(Sweep)
        .where(Sweep.id == sweep_id)
        .values(status=SweepStatus.confirmed)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    sweep = await db.get(Sweep, sweep_id, populate_existing=True)
    logger.info(
        "[%s-sweep] %s %s from index %d to %s: %s",
        blockchain, amount, asset, source.index, to_address, txid,
    )
    return SweepResult(sweep=sweep, already_recorded=False)


async def sweep_solana(
    db: AsyncSession,
    admin: User,
    client: SolanaClient,
    user_id: Optional[int] = None,
    index: Optional[int] = None,
    mint: Optional[str] = None,
    amount_ui: Optional[Decimal] = None,
    to_address: Optional[str] = None,
) -> SweepResult:
    admin_id = admin.id
    to_address = (to_address or settings.SOLANA_TREASURY_ADDRESS or "").strip()
    if not to_address:
        raise ConfigurationError("Solana treasury address is not configured")
    if not 32 <= len(to_address) <= 44:
        raise ValidationError("Invalid destination address")
    mint = (mint or "").strip() or None

    source = await resolve_source(db, SOLANA, user_id, index)
    sol_balance = await client.get_balance(source.address)

    if mint is None:
        asset = "SOL"
        amount = _sweepable(sol_balance, SOLANA_NATIVE_RESERVE, amount_ui, "SOL")
    else:
        asset = mint
        token_balance, decimals = await client.get_token_balance(source.address, mint)
        if token_balance <= 0 or decimals is None:
            raise InsufficientBalanceError(f"No token balance available at address {source.address}")
        if sol_balance < SOLANA_FEE_ESTIMATE:
            raise InsufficientFeesError(
                f"Address {source.address} has insufficient SOL ({sol_balance}) to pay transaction fees"
            )
        amount = _sweepable(token_balance, Decimal(0), amount_ui, "tokens")

    existing = await _find_confirmed(db, SOLANA, source, to_address, asset, amount)
    if existing:
        logger.info("[solana-sweep] identical sweep already confirmed: %s", existing.txid)
        return SweepResult(sweep=existing, already_recorded=True)

    key = _signing_key(SOLANA, source)

    async def send():
        keypair = key.solana_keypair()
        if mint is None:
            lamports = int((amount * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))
            return await client.send_sol(keypair, to_address, lamports)
        raw = int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))
        return await client.send_token(keypair, to_address, mint, raw, decimals)

    return await _broadcast(
        db, send, client.confirm_transaction,
        blockchain=SOLANA, admin_id=admin_id, source=source, to_address=to_address,
        asset=asset, contract_address=mint, amount=amount,
    )


def _tron_contract(symbol: str) -> str:
    contract = settings.TRON_USDT_CONTRACT if symbol == "USDT" else settings.TRON_USDC_CONTRACT
    if not contract:
        raise ConfigurationError(f"Contract address not configured for {symbol}")
    return contract


async def sweep_tron(
    db: AsyncSession,
    admin: User,
    client: TronClient,
    symbol: str,
    user_id: Optional[int] = None,
    index: Optional[int] = None,
    amount_ui: Optional[Decimal] = None,
) -> SweepResult:
    admin_id = admin.id
    symbol = (symbol or "").strip().upper()
    if symbol not in TRON_SYMBOLS:
        raise ValidationError("symbol is required and must be one of: TRX, USDT, USDC")
    treasury = settings.TRON_TREASURY_ADDRESS.strip()
    if not treasury:
        raise ConfigurationError("TRON treasury address is not configured")
    if not treasury.startswith("T") or len(treasury) != 34:
        raise ConfigurationError("Invalid TRON treasury address format")

    source = await resolve_source(db, TRON, user_id, index)
    trx_balance = await client.get_trx_balance(source.address)

    contract = None
    decimals = 6
    if symbol == "TRX":
        reserve = Decimal(str(settings.TRON_FEE_RESERVE))
        amount = _sweepable(trx_balance, reserve, amount_ui, "TRX")
    else:
        contract = _tron_contract(symbol)
        if trx_balance < TRON_MIN_TRX_FOR_TRC20:
            raise InsufficientFeesError(
                f"Address {source.address} has insufficient TRX ({trx_balance}) for TRC20 transfer "
                f"energy/fees. Minimum {TRON_MIN_TRX_FOR_TRC20} TRX required"
            )
        token_balance, decimals = await client.get_trc20_balance(source.address, contract)
        if token_balance <= 0:
            raise InsufficientBalanceError(f"No {symbol} balance available at address {source.address}")
        amount = _sweepable(token_balance, Decimal(0), amount_ui, symbol)

    existing = await _find_confirmed(db, TRON, source, treasury, symbol, amount)
    if existing:
        logger.info("[tron-sweep] identical sweep already confirmed: %s", existing.txid)
        return SweepResult(sweep=existing, already_recorded=True)

    key = _signing_key(TRON, source)

    async def send():
        private_key = key.tron_private_key()
        if contract is None:
            sun = int((amount * SUN_PER_TRX).to_integral_value(rounding=ROUND_DOWN))
            return await client.send_trx(private_key, source.address, treasury, sun)
        raw = int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))
        return await client.send_trc20(private_key, source.address, treasury, contract, raw)

    return await _broadcast(
        db, send, client.confirm_transaction,
        blockchain=TRON, admin_id=admin_id, source=source, to_address=treasury,
        asset=symbol, contract_address=contract, amount=amount,
    )


def sweep_to_dict(s: Sweep) -> dict:
    return {
        "id": s.id,
        "blockchain": s.blockchain,
        "admin_id": s.admin_id,
        "user_id": s.user_id,
        "index": s.index,
        "from_address": s.from_address,
        "to_address": s.to_address,
        "asset": s.asset,
        "contract_address": s.contract_address,
        "amount_ui": float(s.amount_ui),
        "txid": s.txid,
        "status": s.status,
        "error": s.error,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


async def list_sweeps(
    db: AsyncSession,
    blockchain: str,
    page: int = 1,
    limit: int = 50,
    user_id: Optional[int] = None,
    status: Optional[SweepStatus] = None,
) -> dict:
    filters = [Sweep.blockchain == blockchain]
    if user_id is not None:
        filters.append(Sweep.user_id == user_id)
    if status is not None:
        filters.append(Sweep.status == status)

    total = await db.scalar(select(func.count(Sweep.id)).where(*filters)) or 0
    rows = list(await db.scalars(
        select(Sweep)
        .where(*filters)
        .order_by(Sweep.created_at.desc(), Sweep.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ))
    return {
        "sweeps": [sweep_to_dict(s) for s in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }
