from .enums import (
    ProductPublishStatus,
    CollectionSurface,
    NotificationStatus,
    NotificationChannel,
    LlmPurpose,
    ModelRunStatus,
)
from .catalog import Brand, ProductMirror, ProductEmbedding
from .taste_profiles import TasteProfile
from .collections import CuratedCollection, CuratedCollectionItem
from .notifications import NotificationSchedule, Notification
from .model_runs import ModelRun

__all__ = [
    "ProductPublishStatus",
    "CollectionSurface",
    "NotificationStatus",
    "NotificationChannel",
    "LlmPurpose",
    "ModelRunStatus",
    "Brand",
    "ProductMirror",
    "ProductEmbedding",
    "TasteProfile",
    "CuratedCollection",
    "CuratedCollectionItem",
    "NotificationSchedule",
    "Notification",
    "ModelRun",
]
