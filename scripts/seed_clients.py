import asyncio
import logging
import sys
import os

sys.path.append(os.getcwd())

from sqlalchemy import delete

from disburser.db.models import ClientRow
from disburser.db.session import AsyncSessionLocal, init_models

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

async def seed(active: int = 200, inactive: int = 20, invalid: int = 5):
    """
    Loads a synthetic subscriber base for local runs.
    Invalid rows (bad msisdn, empty offer code) must never be selected for payment.
    """
    await init_models()

    async with AsyncSessionLocal() as session:
        await session.execute(delete(ClientRow))

        for i in range(active):
            session.add(ClientRow(msisdn=f"2547{i:08d}", offer_code="OFFER1", subscription_status="A"))
        for i in range(inactive):
            session.add(ClientRow(msisdn=f"2541{i:08d}", offer_code="OFFER1", subscription_status="I"))
        for i in range(invalid):
            if i % 2:
                # msisdn too short
                session.add(ClientRow(msisdn=f"12{i}", offer_code="OFFER1", subscription_status="A"))
            else:
                session.add(ClientRow(msisdn=f"2549{i:08d}", offer_code="", subscription_status="A"))

        await session.commit()

    logger.info(f"Seeded {active} active, {inactive} inactive and {invalid} invalid clients")

if __name__ == "__main__":
    asyncio.run(seed())
