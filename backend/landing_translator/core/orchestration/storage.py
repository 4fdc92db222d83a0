"""Persistence of translation items.

The orchestrator writes through ``ItemStore``; ``SqlItemStore`` maps items
onto the ``translation_items`` table.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from landing_translator.core.services.models import Correction
from landing_translator.models.database.base import async_session_maker
from landing_translator.models.database.enums import ItemStatus
from landing_translator.models.database.translation_item import TranslationItemRecord

from .models import (
    ItemKey,
    QualityIssues,
    SideAsset,
    TranslationItem,
)

logger = logging.getLogger(__name__)


class ItemStore(ABC):
    """Load and save translation items by key."""

    @abstractmethod
    async def load(self, key: ItemKey) -> Optional[TranslationItem]:
        pass

    @abstractmethod
    async def save(self, item: TranslationItem) -> None:
        pass

    @abstractmethod
    async def list_for_page(self, page_id: str) -> List[TranslationItem]:
        pass


def record_to_item(record: TranslationItemRecord) -> TranslationItem:
    """Convert a database row into a TranslationItem."""
    corrections = None
    if record.suggested_corrections is not None:
        corrections = [Correction.model_validate(c) for c in record.suggested_corrections]

    return TranslationItem(
        page_id=record.page_id,
        language=record.language,
        variant=record.variant,
        id=record.translation_id,
        status=ItemStatus(record.status),
        error_message=record.error_message,
        published_url=record.published_url,
        quality_score=record.quality_score,
        quality_issues=QualityIssues.model_validate(record.quality_issues or {}),
        suggested_corrections=corrections,
        side_assets=[SideAsset.model_validate(a) for a in record.side_assets or []],
    )


def copy_item_to_record(item: TranslationItem, record: TranslationItemRecord) -> None:
    record.translation_id = item.id
    record.status = item.status.value
    record.error_message = item.error_message
    record.published_url = item.published_url
    record.quality_score = item.quality_score
    record.quality_issues = item.quality_issues.model_dump()
    record.suggested_corrections = (
        None
        if item.suggested_corrections is None
        else [c.model_dump() for c in item.suggested_corrections]
    )
    record.side_assets = [a.model_dump(mode="json") for a in item.side_assets]


class SqlItemStore(ItemStore):
    """SQLAlchemy implementation, one short session per call."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] = async_session_maker):
        self._session_maker = session_maker

    async def _get_record(
        self, db: AsyncSession, key: ItemKey
    ) -> Optional[TranslationItemRecord]:
        result = await db.execute(
            select(TranslationItemRecord).where(
                TranslationItemRecord.page_id == key.page_id,
                TranslationItemRecord.language == key.language,
                TranslationItemRecord.variant == key.variant,
            )
        )
        return result.scalar_one_or_none()

    async def load(self, key: ItemKey) -> Optional[TranslationItem]:
        async with self._session_maker() as db:
            record = await self._get_record(db, key)
            return record_to_item(record) if record else None

    async def save(self, item: TranslationItem) -> None:
        async with self._session_maker() as db:
            record = await self._get_record(db, item.key)
            if record is None:
                record = TranslationItemRecord(
                    page_id=item.page_id,
                    language=item.language,
                    variant=item.variant,
                )
                db.add(record)
            copy_item_to_record(item, record)
            await db.commit()
        logger.debug(f"[Store] Saved {item.key} status={item.status.value}")

    async def list_for_page(self, page_id: str) -> List[TranslationItem]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(TranslationItemRecord)
                .where(TranslationItemRecord.page_id == page_id)
                .order_by(TranslationItemRecord.language, TranslationItemRecord.variant)
            )
            return [record_to_item(r) for r in result.scalars().all()]
