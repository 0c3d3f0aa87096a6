"""
Admin listing of deposit addresses with live on-chain balances.

Balance lookups fan out with at most BALANCE_FETCH_CONCURRENCY requests in
flight and go through an injected TTLCache keyed by chain and address. A
failed lookup yields a zero-balance row instead of failing the page.
"""
import asyncio
import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.cache import TTLCache
from app.core.errors import sanitize_error_message
from app.models.deposit_address import DepositAddress
from app.models.payment import Payment, PaymentStatus
from app.models.user import User
from app.services.hd_wallet import SOLANA
from app.services.solana import SolanaClient
from app.services.tron import TronClient

logger = logging.getLogger(__name__)

balance_cache = TTLCache(ttl=settings.BALANCE_CACHE_TTL)


def get_balance_cache() -> TTLCache:
    return balance_cache


def _zero_balances(blockchain: str) -> dict:
    if blockchain == SOLANA:
        return {"sol": 0.0, "usdc": 0.0, "usdt": 0.0}
    return {"trx": 0.0, "usdt": 0.0, "usdc": 0.0}


async def _fetch_solana_balances(client: SolanaClient, address: str) -> dict:
    sol = await client.get_balance(address)
    usdc, _ = await client.get_token_balance(address, settings.SOLANA_USDC_MINT)
    usdt, _ = await client.get_token_balance(address, settings.SOLANA_USDT_MINT)
    return {"sol": float(sol), "usdc": float(usdc), "usdt": float(usdt)}


async def _fetch_tron_balances(client: TronClient, address: str) -> dict:
    trx = await client.get_trx_balance(address)
    usdt, _ = await client.get_trc20_balance(address, settings.TRON_USDT_CONTRACT)
    usdc, _ = await client.get_trc20_balance(address, settings.TRON_USDC_CONTRACT)
    return {"trx": float(trx), "usdt": float(usdt), "usdc": float(usdc)}


async def fetch_balances(
    blockchain: str,
    client,
    addresses: list[str],
    cache: TTLCache,
    concurrency: Optional[int] = None,
) -> dict[str, dict]:
    """address -> balances, with bounded concurrency and per-address failure isolation."""
    semaphore = asyncio.Semaphore(concurrency or settings.BALANCE_FETCH_CONCURRENCY)
    fetch = _fetch_solana_balances if blockchain == SOLANA else _fetch_tron_balances

    async def one(address: str) -> tuple[str, dict]:
        key = f"{blockchain}:{address}"
        cached = cache.get(key)
        if cached is not None:
            return address, cached
        async with semaphore:
            try:
                balances = await fetch(client, address)
            except Exception as e:
                logger.warning("[address-balances] %s lookup failed for %s: %s", blockchain, address, sanitize_error_message(e))
                return address, _zero_balances(blockchain)
        cache.set(key, balances)
        return address, balances

    results = await asyncio.gather(*(one(a) for a in addresses))
    return dict(results)


async def list_deposit_addresses(
    db: AsyncSession,
    blockchain: str,
    client,
    cache: TTLCache,
    page: int = 1,
    limit: int = 50,
    search: Optional[str] = None,
    refresh: bool = False,
) -> dict:
    if refresh:
        cache.clear()

    filters = [DepositAddress.blockchain == blockchain]
    if search:
        term = search.strip()
        if term.isdigit():
            filters.append(DepositAddress.user_id == int(term))
        else:
            filters.append(or_(
                DepositAddress.address.contains(term),
                User.username.contains(term),
                User.email.contains(term),
            ))

    total = await db.scalar(
        select(func.count(DepositAddress.id))
        .join(User, User.id == DepositAddress.user_id)
        .where(*filters)
    ) or 0
    rows = (await db.execute(
        select(DepositAddress, User.username, User.email)
        .join(User, User.id == DepositAddress.user_id)
        .where(*filters)
        .order_by(DepositAddress.index)
        .offset((page - 1) * limit)
        .limit(limit)
    )).all()

    user_ids = [r.DepositAddress.user_id for r in rows]
    last_deposits = {}
    if user_ids:
        last_deposits = dict((await db.execute(
            select(Payment.user_id, func.max(Payment.created_at))
            .where(
                Payment.user_id.in_(user_ids),
                Payment.method == blockchain,
                Payment.ipn_type == "deposit",
                Payment.status == PaymentStatus.confirmed,
            )
            .group_by(Payment.user_id)
        )).all())

    balances = await fetch_balances(blockchain, client, [r.DepositAddress.address for r in rows], cache)

    items = []
    for r in rows:
        addr = r.DepositAddress
        last = last_deposits.get(addr.user_id)
        items.append({
            "user_id": addr.user_id,
            "username": r.username,
            "email": r.email,
            "address": addr.address,
            "index": addr.index,
            "balances": balances.get(addr.address, _zero_balances(blockchain)),
            "last_deposit_time": last.isoformat() if last else None,
            "created_at": addr.created_at.isoformat() if addr.created_at else None,
        })
    return {
        "addresses": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }
