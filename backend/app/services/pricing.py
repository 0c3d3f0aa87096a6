"""
Spot prices from the Binance public ticker, used to convert volatile deposits
into ledger units (LU, pegged to USD).
"""
import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import httpx
from app.config import settings
from app.core.errors import ExternalDependencyError

logger = logging.getLogger(__name__)

STABLECOINS = {"USDT", "USDC", "BUSD", "DAI", "TUSD", "USD"}
LU_QUANT = Decimal("0.01")

_NETWORK_SUFFIX = re.compile(r"[-_ ]?(TRC20|ERC20|BEP20|BSC|SPL)$", re.IGNORECASE)


def base_symbol(symbol: str) -> str:
    """'USDT-TRC20' -> 'USDT', 'usdc_spl' -> 'USDC'."""
    symbol = (symbol or "").strip().upper()
    stripped = _NETWORK_SUFFIX.sub("", symbol)
    return stripped or symbol


def is_stablecoin(symbol: str) -> bool:
    return base_symbol(symbol) in STABLECOINS


async def get_spot_price(base: str, quote: str = "USDT") -> Decimal:
    """Last traded price of ``base`` in ``quote``. Raises ExternalDependencyError."""
    base = base_symbol(base)
    if base in STABLECOINS:
        return Decimal(1)
    pair = f"{base}{quote}"
    url = f"{settings.BINANCE_BASE_URL}/api/v3/ticker/price"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(url, params={"symbol": pair})
    except httpx.HTTPError as e:
        raise ExternalDependencyError(f"Price lookup for {pair} failed: {type(e).__name__}") from e

    if resp.status_code != 200:
        raise ExternalDependencyError(f"Price lookup for {pair} failed: HTTP {resp.status_code}")
    try:
        price = Decimal(str(resp.json()["price"]))
    except (KeyError, TypeError, ValueError, InvalidOperation):
        raise ExternalDependencyError(f"Price lookup for {pair} returned no price") from None
    if price <= 0:
        raise ExternalDependencyError(f"Price lookup for {pair} returned a non-positive price")
    return price


async def convert_to_ledger_units(amount: Decimal, symbol: str) -> tuple[Decimal, Decimal]:
    """Return (ledger amount rounded to cents, price used)."""
    price = await get_spot_price(symbol)
    lu = (Decimal(amount) * price).quantize(LU_QUANT, rounding=ROUND_HALF_UP)
    logger.info("[pricing] %s %s @ %s -> %s LU", amount, base_symbol(symbol), price, lu)
    return lu, price
