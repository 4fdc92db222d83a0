"""Centralized enum definitions for database models.

All status and type enums should be defined here for consistency.
"""

from enum import Enum


# =============================================================================
# Translation Item Enums
# =============================================================================


class ItemStatus(str, Enum):
    """Lifecycle status of one (page, language, variant) translation."""

    NONE = "none"  # No translation requested yet
    DRAFT = "draft"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    ERROR = "error"


class ItemVariant(str, Enum):
    """Page variant (A/B split)."""

    CONTROL = "control"
    B = "b"


class SideAssetStatus(str, Enum):
    """Status of one embedded asset (image) translation."""

    PENDING = "pending"
    TRANSLATED = "translated"
    ERROR = "error"
