"""Job payload structures (closed union, one frozen dataclass per job kind).

Every payload knows its queue and its idempotency key. Keys follow the
``{queue}-{entity}`` naming scheme; the collection generation key embeds the
surface and target date so one run per surface per day is admitted.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional, Union

from gifter_jobs.config import (
    PRODUCT_EMBEDDING_QUEUE,
    PRODUCT_ENRICHMENT_QUEUE,
    TASTE_PROFILE_EMBEDDING_QUEUE,
    CURATED_COLLECTIONS_QUEUE,
    REMINDER_DISPATCH_QUEUE,
    CURATION_SETTINGS,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True, frozen=True)
class ProductEmbeddingPayload:
    kind: ClassVar[str] = PRODUCT_EMBEDDING_QUEUE

    product_id: str
    provider: str
    model: str
    dims: int
    previous_text_hash: Optional[str] = None
    triggered_by: str = "manual"  # product.created | product.updated | enrichment | manual
    timestamp: str = field(default_factory=_now_iso)

    def idempotency_key(self) -> str:
        return f"product-embedding-{self.product_id}"


@dataclass(slots=True, frozen=True)
class ProductEnrichmentPayload:
    kind: ClassVar[str] = PRODUCT_ENRICHMENT_QUEUE

    product_id: str
    provider: str
    model: str
    prompt_version: str = "v1"
    current_enrichment_version: Optional[int] = None
    triggered_by: str = "manual"
    timestamp: str = field(default_factory=_now_iso)

    def idempotency_key(self) -> str:
        return f"product-enrichment-{self.product_id}"


@dataclass(slots=True, frozen=True)
class ProfileEmbeddingPayload:
    kind: ClassVar[str] = TASTE_PROFILE_EMBEDDING_QUEUE

    taste_profile_id: str
    user_id: str
    provider: str
    model: str
    dims: int
    recipient_id: Optional[str] = None
    triggered_by: str = "manual"  # profile.completed | profile.updated | manual
    timestamp: str = field(default_factory=_now_iso)

    def idempotency_key(self) -> str:
        return f"taste-profile-embedding-{self.taste_profile_id}"


@dataclass(slots=True, frozen=True)
class CollectionFilters:
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    brand_ids: tuple[str, ...] = ()
    exclude_product_ids: tuple[str, ...] = ()
    is_featured: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CollectionFilters":
        data = data or {}
        return cls(
            min_price=data.get("min_price"),
            max_price=data.get("max_price"),
            brand_ids=tuple(data.get("brand_ids") or ()),
            exclude_product_ids=tuple(data.get("exclude_product_ids") or ()),
            is_featured=data.get("is_featured"),
        )


@dataclass(slots=True, frozen=True)
class CollectionGenerationPayload:
    kind: ClassVar[str] = CURATED_COLLECTIONS_QUEUE

    surface: str  # home | discovery | occasion
    target_date: str  # YYYY-MM-DD
    provider: str
    model: str
    prompt_version: str = "v1"
    collections_count: int = int(CURATION_SETTINGS["default_collections_count"])
    products_per_collection: int = int(CURATION_SETTINGS["default_products_per_collection"])
    filters: CollectionFilters = field(default_factory=CollectionFilters)
    triggered_by: str = "manual"  # scheduled | manual | api
    timestamp: str = field(default_factory=_now_iso)

    def idempotency_key(self) -> str:
        return f"curated-collections-{self.surface}-{self.target_date}"


@dataclass(slots=True, frozen=True)
class ReminderDispatchPayload:
    kind: ClassVar[str] = REMINDER_DISPATCH_QUEUE

    schedule_id: str
    user_id: str
    channel: str  # PUSH | EMAIL
    title: str
    body: str
    scheduled_for: str
    data: Optional[dict[str, Any]] = None
    occasion_id: Optional[str] = None
    triggered_by: str = "scheduler"
    timestamp: str = field(default_factory=_now_iso)

    def idempotency_key(self) -> str:
        return f"reminder-dispatch-{self.schedule_id}"


JobPayload = Union[
    ProductEmbeddingPayload,
    ProductEnrichmentPayload,
    ProfileEmbeddingPayload,
    CollectionGenerationPayload,
    ReminderDispatchPayload,
]

PAYLOAD_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (
        ProductEmbeddingPayload,
        ProductEnrichmentPayload,
        ProfileEmbeddingPayload,
        CollectionGenerationPayload,
        ReminderDispatchPayload,
    )
}


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    body = asdict(payload)
    if isinstance(payload, CollectionGenerationPayload):
        body["filters"]["brand_ids"] = list(payload.filters.brand_ids)
        body["filters"]["exclude_product_ids"] = list(payload.filters.exclude_product_ids)
    return {"kind": payload.kind, **body}


def payload_from_dict(data: dict[str, Any]) -> JobPayload:
    body = dict(data)
    kind = body.pop("kind", None)
    cls = PAYLOAD_TYPES.get(kind)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(f"Unknown job payload kind: {kind}")
    if cls is CollectionGenerationPayload:
        body["filters"] = CollectionFilters.from_dict(body.get("filters"))
    return cls(**body)


__all__ = [
    "ProductEmbeddingPayload",
    "ProductEnrichmentPayload",
    "ProfileEmbeddingPayload",
    "CollectionFilters",
    "CollectionGenerationPayload",
    "ReminderDispatchPayload",
    "JobPayload",
    "PAYLOAD_TYPES",
    "payload_to_dict",
    "payload_from_dict",
]
