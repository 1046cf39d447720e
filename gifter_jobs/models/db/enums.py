"""Central Enum definitions for mirrored domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, job payloads and handler logic.
"""
from __future__ import annotations
import enum


class ProductPublishStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class CollectionSurface(str, enum.Enum):
    HOME = "home"
    DISCOVERY = "discovery"
    OCCASION = "occasion"


# ------------------------ Notifications / Reminders ----------------------- #

class NotificationStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationChannel(str, enum.Enum):
    PUSH = "PUSH"
    EMAIL = "EMAIL"


# ------------------------------ Model telemetry --------------------------- #

class LlmPurpose(str, enum.Enum):
    PRODUCT_ENRICHMENT = "PRODUCT_ENRICHMENT"
    PRODUCT_EMBEDDING = "PRODUCT_EMBEDDING"
    PROFILE_EMBEDDING = "PROFILE_EMBEDDING"
    CURATED_COLLECTIONS = "CURATED_COLLECTIONS"


class ModelRunStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


__all__ = [
    "ProductPublishStatus",
    "CollectionSurface",
    "NotificationStatus",
    "NotificationChannel",
    "LlmPurpose",
    "ModelRunStatus",
]
