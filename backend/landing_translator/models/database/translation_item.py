"""Translation item database model."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Float, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from landing_translator.models.database.base import Base
from landing_translator.models.database.enums import ItemStatus, ItemVariant


class TranslationItemRecord(Base):
    """Persisted state of one (page, language, variant) translation.

    Written once per terminal state transition of an orchestrator run.
    """

    __tablename__ = "translation_items"
    __table_args__ = (
        UniqueConstraint("page_id", "language", "variant", name="uq_item_key"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    page_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    language: Mapped[str] = mapped_column(String(16), nullable=False)
    variant: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ItemVariant.CONTROL.value
    )

    # Assigned by the translation service after the first successful call
    translation_id: Mapped[Optional[str]] = mapped_column(String(64))

    status: Mapped[str] = mapped_column(String(32), default=ItemStatus.NONE.value)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    published_url: Mapped[Optional[str]] = mapped_column(Text)

    # Quality
    quality_score: Mapped[Optional[float]] = mapped_column(Float)
    quality_issues: Mapped[Optional[dict]] = mapped_column(JSON)
    suggested_corrections: Mapped[Optional[list]] = mapped_column(JSON)  # None = legacy shape

    side_assets: Mapped[Optional[list]] = mapped_column(JSON)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
