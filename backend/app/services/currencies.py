"""Default currency rows: the LU ledger unit plus the supported chain assets."""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.currency import Currency, LEDGER_SYMBOL


def default_currencies() -> list[dict]:
    return [
        dict(symbol=LEDGER_SYMBOL, name="Ledger Unit", blockchain="lu", decimals=2,
             is_native=True, deposit=False, withdrawal=False),
        dict(symbol="SOL", name="Solana", blockchain="solana", decimals=9, is_native=True),
        dict(symbol="USDC", name="USD Coin", blockchain="solana", contract_address=settings.SOLANA_USDC_MINT),
        dict(symbol="USDT", name="Tether", blockchain="solana", contract_address=settings.SOLANA_USDT_MINT),
        dict(symbol="USDT-TRC20", name="Tether", blockchain="tron", contract_address=settings.TRON_USDT_CONTRACT),
        dict(symbol="USDC-TRC20", name="USD Coin", blockchain="tron", contract_address=settings.TRON_USDC_CONTRACT),
        dict(symbol="TRX", name="Tron", blockchain="tron", is_native=True,
             deposit=settings.TRON_NATIVE_DEPOSITS_ENABLED),
    ]


async def seed_currencies(db: AsyncSession) -> list[Currency]:
    """Insert any default currency missing by (symbol, blockchain). Idempotent."""
    existing = {
        (c.symbol, c.blockchain): c for c in await db.scalars(select(Currency))
    }
    for row in default_currencies():
        if (row["symbol"], row["blockchain"]) not in existing:
            currency = Currency(**row)
            db.add(currency)
            existing[(row["symbol"], row["blockchain"])] = currency
    await db.commit()
    return list(existing.values())
