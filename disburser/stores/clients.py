from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from disburser.db.models import ClientRow
from disburser.db.session import AsyncSessionLocal
from disburser.domain.models import Client

MSISDN_PATTERN = "^[0-9]{9,15}$"

def _valid_client_filter():
    return (
        ClientRow.msisdn.is_not(None),
        ClientRow.msisdn.regexp_match(MSISDN_PATTERN),
        ClientRow.offer_code.is_not(None),
        ClientRow.offer_code != "",
    )

class SqlClientSource:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def list_clients(self, include_inactive: bool = False) -> list[Client]:
        """
        Billable clients in random order.
        Inactive subscribers ('I') are only included when asked for.
        """
        statuses = ["A", "I"] if include_inactive else ["A"]
        stmt = (
            select(ClientRow)
            .where(ClientRow.subscription_status.in_(statuses), *_valid_client_filter())
            .order_by(func.random())
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            Client(
                msisdn=row.msisdn,
                offer_code=row.offer_code,
                subscription_status=row.subscription_status,
            )
            for row in rows
        ]

    async def client_stats(self) -> dict[str, int]:
        stmt = (
            select(ClientRow.subscription_status, func.count())
            .where(*_valid_client_filter())
            .group_by(ClientRow.subscription_status)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        counts = {status: count for status, count in rows}
        return {
            "total": sum(counts.values()),
            "active": counts.get("A", 0),
            "inactive": counts.get("I", 0),
        }
