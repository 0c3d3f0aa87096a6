"""
Deposit address allocation.

One address per (user, blockchain), derived from a per-chain index taken from
an atomically incremented counter row. The unique constraints on
(user_id, blockchain) and (blockchain, index) settle concurrent first requests.
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AllocationError, ConfigurationError, NotFoundError, ValidationError
from app.models.deposit_address import Counter, DepositAddress
from app.models.user import User
from app.services.hd_wallet import SUPPORTED_CHAINS, derive_address

logger = logging.getLogger(__name__)

MAX_ALLOCATION_ATTEMPTS = 3
GENERATE_BATCH_SIZE = 50


def counter_name(blockchain: str) -> str:
    return f"{blockchain}_deposit_index"


def _check_chain(blockchain: str) -> None:
    if blockchain not in SUPPORTED_CHAINS:
        raise ValidationError(f"Unsupported blockchain: {blockchain}")


async def next_index(db: AsyncSession, name: str) -> int:
    """Atomically take the next index for ``name``. The first index handed out is 0."""
    while True:
        value = await db.scalar(
            update(Counter)
            .where(Counter.name == name)
            .values(value=Counter.value + 1)
            .returning(Counter.value)
            .execution_options(synchronize_session=False)
        )
        if value is not None:
            await db.commit()
            return value - 1
        try:
            db.add(Counter(name=name, value=0))
            await db.commit()
        except IntegrityError:
            # created concurrently; increment the winner's row
            await db.rollback()


async def release_index(db: AsyncSession, name: str) -> None:
    await db.execute(
        update(Counter)
        .where(Counter.name == name, Counter.value > 0)
        .values(value=Counter.value - 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def get_deposit_address(db: AsyncSession, user_id: int, blockchain: str) -> Optional[DepositAddress]:
    return await db.scalar(
        select(DepositAddress).where(
            DepositAddress.user_id == user_id,
            DepositAddress.blockchain == blockchain,
        )
    )


async def get_deposit_address_by_index(db: AsyncSession, blockchain: str, index: int) -> Optional[DepositAddress]:
    return await db.scalar(
        select(DepositAddress).where(
            DepositAddress.blockchain == blockchain,
            DepositAddress.index == index,
        )
    )


async def allocate_deposit_address(db: AsyncSession, user_id: int, blockchain: str) -> DepositAddress:
    """Return the user's address for ``blockchain``, allocating one on first use."""
    _check_chain(blockchain)
    existing = await get_deposit_address(db, user_id, blockchain)
    if existing:
        return existing

    name = counter_name(blockchain)
    for attempt in range(1, MAX_ALLOCATION_ATTEMPTS + 1):
        index = await next_index(db, name)
        try:
            derived = derive_address(blockchain, index)
        except ConfigurationError:
            await release_index(db, name)
            logger.error("[deposit-address] %s wallet not configured, index %d released", blockchain, index)
            raise
        except Exception:
            await release_index(db, name)
            logger.error("[deposit-address] derivation failed for %s index %d, index released", blockchain, index)
            raise

        record = DepositAddress(user_id=user_id, blockchain=blockchain, index=index, address=derived.address)
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            winner = await get_deposit_address(db, user_id, blockchain)
            if winner:
                # concurrent request for the same user won
                await release_index(db, name)
                logger.info(
                    "[deposit-address] user %d already has %s address (index %d), released index %d",
                    user_id, blockchain, winner.index, index,
                )
                return winner
            logger.warning(
                "[deposit-address] %s index %d already taken (attempt %d/%d)",
                blockchain, index, attempt, MAX_ALLOCATION_ATTEMPTS,
            )
            continue

        await db.refresh(record)
        logger.info("[deposit-address] allocated %s index %d for user %d", blockchain, index, user_id)
        return record

    raise AllocationError(f"Could not allocate a {blockchain} deposit address, please retry")


async def require_deposit_address(db: AsyncSession, user_id: int, blockchain: str) -> DepositAddress:
    """Lookup without allocation."""
    record = await get_deposit_address(db, user_id, blockchain)
    if not record:
        raise NotFoundError(f"User {user_id} has no {blockchain} deposit address")
    return record


async def generate_missing_addresses(db: AsyncSession, blockchain: str) -> dict:
    """Allocate addresses for every active user without one, in batches."""
    _check_chain(blockchain)
    has_address = select(DepositAddress.user_id).where(DepositAddress.blockchain == blockchain)
    user_ids = list(await db.scalars(
        select(User.id)
        .where(User.status == "active", User.id.not_in(has_address))
        .order_by(User.id)
    ))

    created = 0
    failed = 0
    for start in range(0, len(user_ids), GENERATE_BATCH_SIZE):
        for user_id in user_ids[start:start + GENERATE_BATCH_SIZE]:
            try:
                await allocate_deposit_address(db, user_id, blockchain)
                created += 1
            except ConfigurationError:
                raise
            except Exception as e:
                failed += 1
                logger.error("[deposit-address] bulk allocation failed for user %d: %s", user_id, type(e).__name__)
        logger.info("[deposit-address] bulk %s batch done: %d/%d", blockchain, min(start + GENERATE_BATCH_SIZE, len(user_ids)), len(user_ids))

    return {"total": len(user_ids), "created": created, "failed": failed}
