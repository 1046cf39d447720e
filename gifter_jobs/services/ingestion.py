"""Product ingestion decisions.

Pure rules deciding whether a product.changed event should produce
enrichment/embedding work, plus ``ingest_product_changed`` which mirrors
the brand and product and enqueues whatever the plan calls for.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional

from sqlalchemy.orm import Session

from gifter_jobs.models.db import ProductMirror, ProductPublishStatus
from gifter_jobs.models.schemas.ingest import ProductChanged, ProductChangedEvent
from gifter_jobs.jobs.enqueue import enqueue_product_embedding, enqueue_product_enrichment
from gifter_jobs.repositories import products as product_repo
from gifter_jobs.repositories.embeddings import get_embedding
from gifter_jobs.utils import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from gifter_jobs.jobs.system import JobSystem

logger = get_logger(__name__)

TEXT_FIELDS = ("title", "description", "short_description", "specs")
TAG_FIELDS = ("gift_tags", "occasion_fit", "style_tags")


@dataclass(slots=True, frozen=True)
class ProcessingDecision:
    should_enrich: bool
    should_embed: bool
    reason: str


@dataclass(slots=True, frozen=True)
class IngestionPlan:
    enqueue_enrichment: bool
    enqueue_embedding: bool
    significant_change: bool
    current_enrichment_version: Optional[int] = None
    previous_text_hash: Optional[str] = None
    reason: str = ""


@dataclass(slots=True)
class IngestResult:
    brand_id: str
    product_id: str
    created: bool
    plan: IngestionPlan
    enrichment_enqueued: bool = False
    embedding_enqueued: bool = False


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _status_name(value: Any) -> str:
    if isinstance(value, ProductPublishStatus):
        return value.value
    return str(value or "").upper()


def should_process_product(product: Any) -> ProcessingDecision:
    """Only published products that are not hidden from gifters get enriched and embedded."""
    status = _status_name(_field(product, "status"))
    if status != ProductPublishStatus.PUBLISHED.value:
        return ProcessingDecision(False, False, f"Product status is {status or 'unknown'}, not PUBLISHED")
    if _field(product, "visible_to_gifter") is False:
        return ProcessingDecision(False, False, "Product is not visible to gifters")
    return ProcessingDecision(True, True, "Product is published and visible to gifters")


def _stable(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def has_significant_product_change(old: Any, new: Any) -> bool:
    """True when text fields or tag lists differ; a missing ``old`` product always counts."""
    if old is None:
        return True
    for name in TEXT_FIELDS:
        if _field(old, name) != _field(new, name):
            logger.debug("Significant change detected: text field modified", field=name)
            return True
    for name in TAG_FIELDS:
        incoming = _field(new, name)
        if incoming is None:
            continue
        if _stable(_field(old, name)) != _stable(incoming):
            logger.debug("Significant change detected: tags modified", field=name)
            return True
    return False


def plan_product_jobs(
    event: ProductChanged,
    existing: Optional[ProductMirror],
    *,
    existing_text_hash: Optional[str] = None,
) -> IngestionPlan:
    decision = should_process_product(event)
    significant = has_significant_product_change(existing, event)
    if not (decision.should_enrich or decision.should_embed):
        return IngestionPlan(False, False, significant, reason=decision.reason)
    return IngestionPlan(
        enqueue_enrichment=decision.should_enrich,
        enqueue_embedding=decision.should_embed,
        significant_change=significant,
        current_enrichment_version=existing.enrichment_version if existing is not None else None,
        # A significant change must re-embed, so the old hash is not handed on.
        previous_text_hash=None if significant else existing_text_hash,
        reason=decision.reason,
    )


def _product_fields(product: ProductChanged, brand_id: str) -> dict[str, Any]:
    status_name = product.status.upper()
    status = ProductPublishStatus(status_name) if status_name in ProductPublishStatus.__members__ else ProductPublishStatus.DRAFT
    fields: dict[str, Any] = {
        "brand_id": brand_id,
        "title": product.title,
        "slug": product.slug,
        "status": status,
        "visible_to_gifter": product.visible_to_gifter is not False,
        "is_featured": bool(product.is_featured),
        "short_description": product.short_description,
        "description": product.description,
        "specs": product.specs,
        "image_url": product.image_url,
        "default_price": product.default_price,
        "default_currency": product.default_currency,
    }
    # Tags the CMS leaves out keep their enriched values.
    for name in TAG_FIELDS:
        value = getattr(product, name)
        if value is not None:
            fields[name] = value
    return fields


def ingest_product_changed(session: Session, event: ProductChangedEvent, jobs: "JobSystem") -> IngestResult:
    """Mirror brand + product by natural key, commit, then enqueue follow-up jobs."""
    logger.info(
        "Processing product.changed event",
        payload_product_id=event.payload_product_id,
        payload_brand_id=event.brand.payload_brand_id,
    )
    brand = product_repo.upsert_brand(
        session,
        event.brand.payload_brand_id,
        {
            "name": event.brand.name,
            "slug": event.brand.slug,
            "gift_style": event.brand.gift_style,
            "style_tags": event.brand.style_tags,
        },
    )
    existing = product_repo.get_product_by_payload_id(session, event.payload_product_id)
    existing_hash = None
    if existing is not None:
        stored = get_embedding(session, existing.id, jobs.generation.embedding_model)
        existing_hash = stored.text_hash if stored is not None else None
    plan = plan_product_jobs(event.product, existing, existing_text_hash=existing_hash)

    product, created = product_repo.upsert_product(session, event.payload_product_id, _product_fields(event.product, brand.id))
    session.commit()
    result = IngestResult(brand_id=brand.id, product_id=product.id, created=created, plan=plan)

    if plan.enqueue_enrichment:
        enqueue_product_enrichment(
            jobs,
            product.id,
            current_enrichment_version=plan.current_enrichment_version,
            triggered_by="product.created" if created else "product.updated",
        )
        result.enrichment_enqueued = True
    if plan.enqueue_embedding:
        enqueue_product_embedding(
            jobs,
            product.id,
            previous_text_hash=plan.previous_text_hash,
            triggered_by="product.created" if created else "product.updated",
        )
        result.embedding_enqueued = True
    logger.info(
        "Product ingested",
        product_id=product.id,
        created=created,
        significant_change=plan.significant_change,
        enrichment_enqueued=result.enrichment_enqueued,
        embedding_enqueued=result.embedding_enqueued,
        reason=plan.reason,
    )
    return result


__all__ = [
    "ProcessingDecision",
    "IngestionPlan",
    "IngestResult",
    "should_process_product",
    "has_significant_product_change",
    "plan_product_jobs",
    "ingest_product_changed",
]
