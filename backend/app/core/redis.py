from typing import Optional
import redis.asyncio as aioredis
from fastapi import Depends, HTTPException
from app.config import settings
from app.core.deps import get_current_user
from app.models.user import User

_redis: Optional[aioredis.Redis] = None

async def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


async def deposit_rate_limit(user: User = Depends(get_current_user)) -> None:
    """Allow DEPOSIT_RATE_LIMIT_PER_MINUTE deposit submissions per user per minute."""
    redis = await get_redis()
    key = f"ratelimit:deposit:{user.id}"
    count = await redis.incr(key)
    if count == 1:
        await redis.expire(key, 60)
    if count > settings.DEPOSIT_RATE_LIMIT_PER_MINUTE:
        raise HTTPException(429, "Too many deposit requests, please try again later")
