import logging
from decimal import Decimal

import httpx
from app.config import settings

logger = logging.getLogger(__name__)


async def deposit_postback(user_id: int, username: str, payment_id: int, amount: Decimal, currency: str = "LU") -> bool:
    """Notify the affiliate network about a confirmed deposit. Returns False when not configured."""
    if not settings.AFFILIATE_POSTBACK_URL:
        return False
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.post(settings.AFFILIATE_POSTBACK_URL, json={
            "event": "deposit",
            "user_id": str(user_id),
            "username": username or "",
            "payment_id": str(payment_id),
            "amount": str(amount),
            "currency": currency,
        })
    resp.raise_for_status()
    return True
