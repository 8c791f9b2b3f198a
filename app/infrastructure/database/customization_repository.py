from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.database.models import CustomizationRecord


class CustomizationRepository:
    """Customization records keyed by product id; saving overwrites (last write wins)."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def save(self, record: CustomizationRecord) -> CustomizationRecord:
        async with self.session_factory() as session:
            merged = await session.merge(record)
            await session.commit()
            return merged

    async def get(self, product_id: str) -> Optional[CustomizationRecord]:
        async with self.session_factory() as session:
            return await session.get(CustomizationRecord, product_id)
