"""Typed enqueue helpers: build the payload, apply the naming scheme, enqueue.

Each helper returns the queue's EnqueueResult; ``created`` is False when an
active job with the same idempotency key already exists.
"""
from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any, Optional

from gifter_jobs.jobs.models import EnqueueResult, JobOptions
from gifter_jobs.jobs.payloads import (
    CollectionFilters,
    CollectionGenerationPayload,
    ProductEmbeddingPayload,
    ProductEnrichmentPayload,
    ProfileEmbeddingPayload,
    ReminderDispatchPayload,
)

if TYPE_CHECKING:  # pragma: no cover
    from gifter_jobs.jobs.system import JobSystem
    from gifter_jobs.models.db import NotificationSchedule


def enqueue_product_embedding(
    jobs: "JobSystem",
    product_id: str,
    *,
    previous_text_hash: Optional[str] = None,
    triggered_by: str = "manual",
    options: Optional[JobOptions] = None,
) -> EnqueueResult:
    cfg = jobs.generation.config
    payload = ProductEmbeddingPayload(
        product_id=product_id,
        provider=cfg["provider"],
        model=cfg["embedding_model"],
        dims=cfg["embedding_dims"],
        previous_text_hash=previous_text_hash,
        triggered_by=triggered_by,
    )
    return jobs.enqueue(payload, options)


def enqueue_product_enrichment(
    jobs: "JobSystem",
    product_id: str,
    *,
    current_enrichment_version: Optional[int] = None,
    prompt_version: str = "v1",
    triggered_by: str = "manual",
    options: Optional[JobOptions] = None,
) -> EnqueueResult:
    cfg = jobs.generation.config
    payload = ProductEnrichmentPayload(
        product_id=product_id,
        provider=cfg["provider"],
        model=cfg["model"],
        prompt_version=prompt_version,
        current_enrichment_version=current_enrichment_version,
        triggered_by=triggered_by,
    )
    return jobs.enqueue(payload, options)


def enqueue_taste_profile_embedding(
    jobs: "JobSystem",
    taste_profile_id: str,
    user_id: str,
    *,
    recipient_id: Optional[str] = None,
    triggered_by: str = "manual",
    options: Optional[JobOptions] = None,
) -> EnqueueResult:
    cfg = jobs.generation.config
    payload = ProfileEmbeddingPayload(
        taste_profile_id=taste_profile_id,
        user_id=user_id,
        recipient_id=recipient_id,
        provider=cfg["provider"],
        model=cfg["embedding_model"],
        dims=cfg["embedding_dims"],
        triggered_by=triggered_by,
    )
    return jobs.enqueue(payload, options)


def enqueue_curated_collections(
    jobs: "JobSystem",
    surface: str,
    target_date: date,
    *,
    collections_count: Optional[int] = None,
    products_per_collection: Optional[int] = None,
    filters: Optional[CollectionFilters] = None,
    prompt_version: str = "v1",
    triggered_by: str = "manual",
    options: Optional[JobOptions] = None,
) -> EnqueueResult:
    cfg = jobs.generation.config
    extra: dict[str, Any] = {}
    if collections_count is not None:
        extra["collections_count"] = collections_count
    if products_per_collection is not None:
        extra["products_per_collection"] = products_per_collection
    payload = CollectionGenerationPayload(
        surface=surface,
        target_date=target_date.isoformat(),
        provider=cfg["provider"],
        model=cfg["model"],
        prompt_version=prompt_version,
        filters=filters or CollectionFilters(),
        triggered_by=triggered_by,
        **extra,
    )
    return jobs.enqueue(payload, options)


def enqueue_reminder_dispatch(
    jobs: "JobSystem",
    schedule: "NotificationSchedule",
    *,
    triggered_by: str = "scheduler",
    options: Optional[JobOptions] = None,
) -> EnqueueResult:
    body = schedule.payload or {}
    payload = ReminderDispatchPayload(
        schedule_id=schedule.id,
        user_id=schedule.user_id,
        channel=schedule.channel.value,
        title=str(body.get("title", "")),
        body=str(body.get("body", "")),
        data=body.get("data"),
        occasion_id=schedule.occasion_id,
        scheduled_for=schedule.scheduled_for.isoformat(),
        triggered_by=triggered_by,
    )
    return jobs.enqueue(payload, options)


__all__ = [
    "enqueue_product_embedding",
    "enqueue_product_enrichment",
    "enqueue_taste_profile_embedding",
    "enqueue_curated_collections",
    "enqueue_reminder_dispatch",
]
