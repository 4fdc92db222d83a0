"""Database models package."""

from landing_translator.models.database.base import Base, init_db
from landing_translator.models.database.translation_item import TranslationItemRecord
# Centralized enums
from landing_translator.models.database.enums import (
    ItemStatus,
    ItemVariant,
    SideAssetStatus,
)

__all__ = [
    # Base
    "Base",
    "init_db",
    # Models
    "TranslationItemRecord",
    # Enums
    "ItemStatus",
    "ItemVariant",
    "SideAssetStatus",
]
