"""
On-chain deposit verification.

A deposit claim (user, currency, txn_id) is checked against the chain and
credited to the user's LU balance at most once. The unique index on
payments.txn_id is what guarantees a single credit when the same transaction
is submitted concurrently: the Payment row and the ledger credit are written
in one commit, and the loser of an insert race returns the winner's payment.

Transfer extraction (``extract_*``) is pure and works on the raw RPC payloads,
so the single-deposit endpoints and the batch scan share it.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PaymentError,
    RecipientMismatch,
    ValidationError,
    VerificationFailure,
    sanitize_error_message,
)
from app.models.currency import Currency
from app.models.payment import Payment, PaymentStatus
from app.models.user import User
from app.services import affiliate, bonus as deposit_bonus
from app.services.deposit_addresses import allocate_deposit_address
from app.services.hd_wallet import SOLANA, TRON
from app.services.ledger import balance_update, get_ledger_balance
from app.services.pricing import base_symbol, convert_to_ledger_units
from app.services.solana import LAMPORTS_PER_SOL, SolanaClient
from app.services.tron import SUN_PER_TRX, TronClient, hex_to_base58

logger = logging.getLogger(__name__)

SOLANA_SUPPORTED = {"SOL", "USDC", "USDT"}
TRON_TOKEN_SUPPORTED = {"USDT", "USDC"}
SCAN_SIGNATURE_LIMIT = 50
SCAN_MAX_ERRORS = 10

_SOLANA_SIGNATURE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{43,90}$")
_TRON_TXID = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class TransferMatch:
    to_address: str
    from_address: Optional[str]
    amount: Decimal


@dataclass
class DepositResult:
    payment: Payment
    already_processed: bool
    amount: Decimal
    lu_amount: Decimal


def normalize_txn_id(blockchain: str, txn_id: str) -> str:
    txn_id = (txn_id or "").strip()
    if blockchain == TRON:
        txn_id = txn_id.lower()
        if txn_id.startswith("0x"):
            txn_id = txn_id[2:]
        if not _TRON_TXID.match(txn_id):
            raise ValidationError("Invalid TRON transaction id (must be 64 hex characters)")
    elif not _SOLANA_SIGNATURE.match(txn_id):
        raise ValidationError("Invalid Solana transaction signature")
    return txn_id


def _is_native(currency: Currency) -> bool:
    return bool(currency.is_native) or not (currency.contract_address or "").strip()


def _account_key(key) -> Optional[str]:
    if isinstance(key, str):
        return key
    if isinstance(key, dict):
        return key.get("pubkey")
    return None


def _ui_amount(token_balance: Optional[dict]) -> Decimal:
    if not token_balance:
        return Decimal(0)
    ui = token_balance.get("uiTokenAmount") or {}
    if ui.get("uiAmountString") is not None:
        return Decimal(ui["uiAmountString"])
    if ui.get("uiAmount") is not None:
        return Decimal(str(ui["uiAmount"]))
    if ui.get("amount") is not None and ui.get("decimals") is not None:
        return Decimal(ui["amount"]) / (Decimal(10) ** int(ui["decimals"]))
    return Decimal(0)


# ---------------------------------------------------------------------------
# Pure transfer extraction
# ---------------------------------------------------------------------------

def extract_solana_native_transfer(tx: dict, address: str) -> Optional[TransferMatch]:
    """SOL credited to ``address``: parsed transfer instruction first, lamport deltas second."""
    message = tx.get("transaction", {}).get("message", {})
    meta = tx.get("meta") or {}

    for ix in message.get("instructions") or []:
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        if info.get("destination") == address and "lamports" in info:
            return TransferMatch(
                to_address=address,
                from_address=info.get("source"),
                amount=Decimal(info["lamports"]) / LAMPORTS_PER_SOL,
            )

    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    keys = [_account_key(k) for k in message.get("accountKeys") or []]
    count = min(len(keys), len(pre), len(post))

    best_index, best_delta = None, 0
    for i in range(count):
        if keys[i] == address and post[i] - pre[i] > best_delta:
            best_index, best_delta = i, post[i] - pre[i]
    if best_index is None:
        return None

    sender = next(
        (keys[j] for j in range(count) if j != best_index and pre[j] > post[j]),
        None,
    )
    return TransferMatch(
        to_address=address,
        from_address=sender,
        amount=Decimal(best_delta) / LAMPORTS_PER_SOL,
    )


def extract_solana_token_transfer(tx: dict, address: str, mint: str) -> Optional[TransferMatch]:
    """SPL tokens of ``mint`` credited to token accounts owned by ``address``."""
    meta = tx.get("meta") or {}
    pre_balances = meta.get("preTokenBalances") or []
    post_balances = meta.get("postTokenBalances") or []

    for post in post_balances:
        if post.get("owner") != address or post.get("mint") != mint:
            continue
        pre = next(
            (p for p in pre_balances
             if p.get("accountIndex") == post.get("accountIndex") and p.get("mint") == mint),
            None,
        ) or next(
            (p for p in pre_balances if p.get("owner") == address and p.get("mint") == mint),
            None,
        )
        amount = _ui_amount(post) - _ui_amount(pre)
        if amount <= 0:
            continue

        sender = None
        for p in pre_balances:
            if p.get("mint") != mint or p.get("owner") == address:
                continue
            after = next(
                (q for q in post_balances
                 if q.get("mint") == mint and q.get("accountIndex") == p.get("accountIndex")),
                None,
            )
            if after is not None and _ui_amount(p) > _ui_amount(after):
                sender = p.get("owner")
                break
        return TransferMatch(to_address=address, from_address=sender, amount=amount)
    return None


def extract_trc20_transfer(events: list[dict], contract_address: str, address: str, decimals: int) -> Optional[TransferMatch]:
    """
    TRC20 Transfer event of ``contract_address``. Prefers an event paying
    ``address``; otherwise returns the first matching-contract transfer so the
    caller can report the recipient mismatch.
    """
    candidates = []
    for event in events:
        if event.get("event_name") != "Transfer":
            continue
        if event.get("contract_address") != contract_address:
            continue
        result = event.get("result") or {}
        to_raw = result.get("to") or result.get("_to")
        value = result.get("value") or result.get("_value")
        if not to_raw or value is None:
            continue
        from_raw = result.get("from") or result.get("_from")
        candidates.append(TransferMatch(
            to_address=hex_to_base58(to_raw),
            from_address=hex_to_base58(from_raw) if from_raw else None,
            amount=Decimal(str(value)) / (Decimal(10) ** decimals),
        ))
    for match in candidates:
        if match.to_address == address:
            return match
    return candidates[0] if candidates else None


def extract_trx_transfer(tx: dict) -> Optional[TransferMatch]:
    contracts = (tx.get("raw_data") or {}).get("contract") or []
    for contract in contracts:
        if contract.get("type") != "TransferContract":
            continue
        value = (contract.get("parameter") or {}).get("value") or {}
        if "to_address" not in value:
            continue
        owner = value.get("owner_address")
        return TransferMatch(
            to_address=hex_to_base58(value["to_address"]),
            from_address=hex_to_base58(owner) if owner else None,
            amount=Decimal(value.get("amount", 0)) / SUN_PER_TRX,
        )
    return None


# ---------------------------------------------------------------------------
# Chain lookups
# ---------------------------------------------------------------------------

async def fetch_solana_transaction(client: SolanaClient, signature: str) -> dict:
    tx = await client.get_transaction(signature)
    if not tx:
        raise NotFoundError("Transaction not found on Solana blockchain")
    if not tx.get("meta"):
        raise NotFoundError("Transaction metadata not available")
    if tx["meta"].get("err") is not None:
        raise VerificationFailure("Transaction failed on blockchain")
    return tx


def match_solana_transfer(tx: dict, currency: Currency, address: str) -> TransferMatch:
    symbol = base_symbol(currency.symbol)
    if symbol not in SOLANA_SUPPORTED:
        raise ValidationError(f"Currency {currency.symbol} not supported for Solana deposits")
    if symbol == "SOL" and _is_native(currency):
        transfer = extract_solana_native_transfer(tx, address)
    else:
        if not currency.contract_address:
            raise ConfigurationError("Currency mint is required for SPL token deposits")
        transfer = extract_solana_token_transfer(tx, address, currency.contract_address)
    if transfer is None:
        raise RecipientMismatch("Transaction recipient does not match the user deposit address")
    return transfer


async def fetch_tron_transfer(client: TronClient, txid: str, currency: Currency, address: str) -> TransferMatch:
    native = _is_native(currency)
    symbol = base_symbol(currency.symbol)
    if native:
        if not settings.TRON_NATIVE_DEPOSITS_ENABLED:
            raise ValidationError("Native TRX deposits are not supported")
    else:
        if symbol not in TRON_TOKEN_SUPPORTED:
            raise ValidationError(f"Currency {currency.symbol} not supported for TRON deposits")

    tx = await client.get_transaction(txid)
    if not tx:
        raise NotFoundError("Transaction not found on TRON blockchain")
    info = await client.get_transaction_info(txid)
    if not info:
        raise NotFoundError("Transaction info not available")
    result = (info.get("receipt") or {}).get("result") or info.get("result")
    if result is None and native:
        # plain TRX transfers carry no receipt result, only contractRet
        result = ((tx.get("ret") or [{}])[0]).get("contractRet")
    if result != "SUCCESS":
        raise VerificationFailure(f"Transaction failed on blockchain: {result or 'unknown error'}")

    if native:
        transfer = extract_trx_transfer(tx)
    else:
        events = await client.get_transfer_events(txid)
        transfer = extract_trc20_transfer(events, currency.contract_address, address, currency.decimals or 6)
        if transfer is None:
            raise VerificationFailure("No TRC20 Transfer event found for this token")
    if transfer is None or transfer.to_address != address:
        raise RecipientMismatch("Transaction recipient does not match the user deposit address")
    return transfer


# ---------------------------------------------------------------------------
# Verify + credit
# ---------------------------------------------------------------------------

async def _load_currency(db: AsyncSession, currency_id: int, blockchain: str) -> Currency:
    currency = await db.get(Currency, currency_id)
    if not currency:
        raise ValidationError("Currency not found")
    if currency.blockchain != blockchain:
        raise ValidationError(f"Currency must be a {blockchain} currency")
    if not currency.deposit or not currency.status:
        raise ValidationError(f"Deposits of {currency.symbol} are disabled")
    return currency


async def _confirmed_payment(db: AsyncSession, txn_id: str) -> Optional[Payment]:
    return await db.scalar(
        select(Payment).where(Payment.txn_id == txn_id, Payment.status == PaymentStatus.confirmed)
    )


def _already(payment: Payment, user_id: int) -> DepositResult:
    if payment.user_id != user_id:
        raise ConflictError("Transaction has already been credited to another account")
    return DepositResult(
        payment=payment,
        already_processed=True,
        amount=Decimal(payment.amount),
        lu_amount=Decimal(payment.fiat_amount),
    )


async def credit_deposit(
    db: AsyncSession,
    user_id: int,
    currency: Currency,
    txn_id: str,
    address: str,
    transfer: TransferMatch,
    sender: Optional[str] = None,
    bonus_id: Optional[int] = None,
) -> DepositResult:
    """Convert, check the minimum and write Payment + ledger credit in one commit."""
    # a rollback expires loaded instances, so work with plain values from here on
    user = await db.get(User, user_id)
    affiliate_code, username = user.affiliate, user.username
    currency_id, symbol, blockchain = currency.id, currency.symbol, currency.blockchain

    if transfer.to_address != address:
        raise RecipientMismatch("Transaction recipient does not match the user deposit address")
    if transfer.amount <= 0:
        raise VerificationFailure("No valid deposit amount found in transaction")

    lu_amount, price = await convert_to_ledger_units(transfer.amount, symbol)
    if lu_amount < Decimal(str(settings.MIN_DEPOSIT_LU)):
        raise VerificationFailure(f"Minimum deposit is {settings.MIN_DEPOSIT_LU:g} LU")

    balance = await get_ledger_balance(db, user_id)
    balance_id = balance.id
    values = dict(
        user_id=user_id,
        balance_id=balance_id,
        currency_id=currency_id,
        ipn_type="deposit",
        method=blockchain,
        amount=transfer.amount,
        fiat_amount=lu_amount,
        status=PaymentStatus.confirmed,
        status_text="confirmed",
        address=address,
        from_address=transfer.from_address or sender or "",
        bonus_id=bonus_id,
        data={"symbol": symbol, "price": str(price)},
    )

    pending = await db.scalar(select(Payment).where(Payment.txn_id == txn_id))
    if pending:
        # self-heal an unconfirmed record; the status guard keeps this exactly-once
        res = await db.execute(
            update(Payment)
            .where(Payment.id == pending.id, Payment.status != PaymentStatus.confirmed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            await db.rollback()
            return _already(await _confirmed_payment(db, txn_id), user_id)
        payment = pending
    else:
        payment = Payment(txn_id=txn_id, **values)
        db.add(payment)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            winner = await _confirmed_payment(db, txn_id)
            if winner is None:
                raise ConflictError("Transaction is being processed, please retry")
            logger.info("[%s-deposit] txn %s credited by a concurrent request", blockchain, txn_id)
            return _already(winner, user_id)

    await balance_update(db, balance_id, lu_amount, f"deposit-{blockchain}", payment_id=payment.id)
    await db.commit()
    await db.refresh(payment)
    logger.info(
        "[%s-deposit] confirmed txn %s user %d: %s %s -> %s LU",
        blockchain, txn_id, user_id, transfer.amount, symbol, lu_amount,
    )

    if affiliate_code:
        try:
            await affiliate.deposit_postback(user_id, username, payment.id, lu_amount)
        except Exception as e:
            logger.error("[deposit] affiliate postback failed for payment %d: %s", payment.id, sanitize_error_message(e))
    if payment.bonus_id:
        payment_id = payment.id
        try:
            await deposit_bonus.apply_deposit_bonus(db, payment)
        except Exception as e:
            await db.rollback()
            await db.refresh(payment)
            logger.error("[deposit] bonus evaluation failed for payment %d: %s", payment_id, sanitize_error_message(e))

    return DepositResult(payment=payment, already_processed=False, amount=transfer.amount, lu_amount=lu_amount)


async def verify_solana_deposit(
    db: AsyncSession,
    user: User,
    client: SolanaClient,
    currency_id: int,
    txn_id: str,
    sender: Optional[str] = None,
    bonus_id: Optional[int] = None,
) -> DepositResult:
    user_id = user.id
    await _load_currency(db, currency_id, SOLANA)
    txn_id = normalize_txn_id(SOLANA, txn_id)
    deposit_address = await allocate_deposit_address(db, user_id, SOLANA)
    address = deposit_address.address

    existing = await _confirmed_payment(db, txn_id)
    if existing:
        return _already(existing, user_id)

    # allocation may roll back on a lost race, which expires the instance loaded above
    currency = await _load_currency(db, currency_id, SOLANA)
    tx = await fetch_solana_transaction(client, txn_id)
    transfer = match_solana_transfer(tx, currency, address)
    return await credit_deposit(db, user_id, currency, txn_id, address, transfer, sender, bonus_id)


async def verify_tron_deposit(
    db: AsyncSession,
    user: User,
    client: TronClient,
    currency_id: int,
    txn_id: str,
    sender: Optional[str] = None,
    bonus_id: Optional[int] = None,
) -> DepositResult:
    user_id = user.id
    currency = await _load_currency(db, currency_id, TRON)
    if not _is_native(currency) and not currency.contract_address:
        raise ConfigurationError("Currency contract address is required for TRC20 deposits")
    txn_id = normalize_txn_id(TRON, txn_id)
    deposit_address = await allocate_deposit_address(db, user_id, TRON)
    address = deposit_address.address

    existing = await _confirmed_payment(db, txn_id)
    if existing:
        return _already(existing, user_id)

    # allocation may roll back on a lost race, which expires the instance loaded above
    currency = await _load_currency(db, currency_id, TRON)
    transfer = await fetch_tron_transfer(client, txn_id, currency, address)
    return await credit_deposit(db, user_id, currency, txn_id, address, transfer, sender, bonus_id)


async def scan_solana_deposits(db: AsyncSession, user: User, client: SolanaClient) -> dict:
    """Credit any recent, not yet confirmed transfers to the user's Solana address."""
    user_id = user.id
    deposit_address = await allocate_deposit_address(db, user_id, SOLANA)
    address = deposit_address.address
    signatures = await client.get_signatures(address, limit=SCAN_SIGNATURE_LIMIT)
    if not signatures:
        return {"message": "No recent transactions found", "deposits_found": 0, "deposits_confirmed": []}

    currency_ids = list(await db.scalars(
        select(Currency.id)
        .where(Currency.blockchain == SOLANA, Currency.deposit == True, Currency.status == True)
        .order_by(Currency.id)
    ))
    if not currency_ids:
        raise ConfigurationError("No Solana currencies configured")

    confirmed = []
    errors = []
    for signature in signatures:
        if await _confirmed_payment(db, signature):
            continue
        try:
            tx = await fetch_solana_transaction(client, signature)
        except PaymentError as e:
            errors.append({"signature": signature, "error": sanitize_error_message(e.message)})
            continue

        for currency_id in currency_ids:
            currency = await db.get(Currency, currency_id)
            symbol = currency.symbol
            try:
                transfer = match_solana_transfer(tx, currency, address)
                result = await credit_deposit(db, user_id, currency, signature, address, transfer)
            except RecipientMismatch:
                continue
            except PaymentError as e:
                errors.append({"signature": signature, "currency": symbol, "error": sanitize_error_message(e.message)})
                continue
            if not result.already_processed:
                confirmed.append({
                    "signature": signature,
                    "currency": symbol,
                    "amount": str(result.amount),
                    "lu_amount": float(result.lu_amount),
                    "payment_id": result.payment.id,
                    "status": "confirmed",
                })
            break

    logger.info(
        "[solana-scan] user %d: checked %d signatures, %d new deposits",
        user_id, len(signatures), len(confirmed),
    )
    response = {
        "message": f"Checked {len(signatures)} transactions. Found {len(confirmed)} new deposits.",
        "deposits_found": len(confirmed),
        "deposits_confirmed": confirmed,
    }
    if errors:
        response["errors"] = errors[:SCAN_MAX_ERRORS]
    return response
