import asyncio
import logging
from app.database import AsyncSessionLocal
from app.services.currencies import seed_currencies

logging.basicConfig(level=logging.INFO)

async def seed():
    async with AsyncSessionLocal() as session:
        currencies = await seed_currencies(session)
        logging.info("%d currencies configured", len(currencies))

asyncio.run(seed())
