"""Job handlers, one per payload kind, and the registry that dispatches to them.

Handlers are re-entrant: before any expensive or externally visible step they
check whether stored state already reflects the work (content hashes,
enrichment version, schedule status) and return a skipped result instead.
A returned JobResult is acknowledged; raising hands the job back for retry.
"""
from __future__ import annotations

import hashlib
import json
import time
from datetime import date
from typing import TYPE_CHECKING, Any, Callable, Mapping, TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from gifter_jobs.jobs.enqueue import enqueue_product_embedding
from gifter_jobs.jobs.models import JobRecord, JobResult, NonRetryableJobError
from gifter_jobs.jobs.payloads import (
    PAYLOAD_TYPES,
    CollectionGenerationPayload,
    ProductEmbeddingPayload,
    ProductEnrichmentPayload,
    ProfileEmbeddingPayload,
    ReminderDispatchPayload,
)
from gifter_jobs.models.db import CollectionSurface, LlmPurpose, NotificationStatus, ProductMirror, TasteProfile
from gifter_jobs.models.schemas.curation import EnrichmentOutput
from gifter_jobs.repositories import reminders as reminder_repo
from gifter_jobs.repositories.embeddings import get_embedding, replace_embedding
from gifter_jobs.repositories.products import get_product
from gifter_jobs.services.generation import GenerationServiceError, parse_json_response
from gifter_jobs.services.notifications import OutboundMessage
from gifter_jobs.services.prompts import parse_prompt_version
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.time import utc_now

if TYPE_CHECKING:  # pragma: no cover
    from gifter_jobs.jobs.system import JobSystem

logger = get_logger(__name__)

ENRICHMENT_SYSTEM_PROMPT = "You are an expert e-commerce merchandiser. Output JSON only."

Handler = Callable[[JobRecord, "JobSystem"], JobResult]
P = TypeVar("P")


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _tags(value: Any) -> list[str]:
    return [str(v) for v in value] if isinstance(value, list) else []


def _expect_payload(record: JobRecord, kind: type[P]) -> P:
    if not isinstance(record.payload, kind):
        raise NonRetryableJobError(f"Expected {kind.__name__} payload, got {type(record.payload).__name__}")
    return record.payload


def build_product_embedding_text(product: ProductMirror) -> str:
    brand = product.brand
    parts = [f"{product.title} by {brand.name if brand else 'Unknown'}"]
    if product.short_description:
        parts.append(product.short_description)
    if product.description:
        parts.append(product.description[:500])
    if isinstance(product.gift_tags, list):
        parts.append(f"Gift tags: {', '.join(_tags(product.gift_tags))}")
    if isinstance(product.occasion_fit, list):
        parts.append(f"Occasions: {', '.join(_tags(product.occasion_fit))}")
    if isinstance(product.style_tags, list):
        parts.append(f"Style: {', '.join(_tags(product.style_tags))}")
    if brand is not None and brand.gift_style:
        parts.append(f"Brand gift style: {brand.gift_style}")
    if brand is not None and isinstance(brand.style_tags, list):
        parts.append(f"Brand style: {', '.join(_tags(brand.style_tags))}")
    return ". ".join(parts)


def build_profile_embedding_text(profile: TasteProfile) -> str:
    lines: list[str] = []
    if profile.name:
        lines.append(f"Profile Name: {profile.name}")
    if profile.mode:
        lines.append(f"Type: {profile.mode}")
    if isinstance(profile.answers, Mapping):
        for key, value in profile.answers.items():
            lines.append(f"{key}: {json.dumps(value)}")
    if profile.facets:
        lines.append(f"Traits: {json.dumps(profile.facets)}")
    return "\n".join(lines)


def handle_product_embedding(record: JobRecord, system: "JobSystem") -> JobResult:
    payload = _expect_payload(record, ProductEmbeddingPayload)
    started = time.perf_counter()
    session = system.session_factory()
    try:
        product = get_product(session, payload.product_id)
        if product is None:
            logger.warning("Product not found, skipping embedding", product_id=payload.product_id, job_id=record.job_id)
            return JobResult.skip("product-not-found", success=False, processing_time_ms=_elapsed_ms(started), product_id=payload.product_id)

        text = build_product_embedding_text(product)
        digest = text_hash(text)
        stored = get_embedding(session, product.id, payload.model)
        if digest == payload.previous_text_hash or (stored is not None and stored.text_hash == digest):
            logger.info("Text hash unchanged, skipping re-embedding", product_id=product.id)
            return JobResult.skip("unchanged-hash", processing_time_ms=_elapsed_ms(started), product_id=product.id, text_hash=digest)

        try:
            embeddings = system.generation.embed([text], purpose=LlmPurpose.PRODUCT_EMBEDDING, trace_id=record.job_id)
        except GenerationServiceError as e:
            if not e.retryable:
                raise NonRetryableJobError(str(e)) from e
            raise

        row = replace_embedding(
            session,
            product_id=product.id,
            provider=payload.provider,
            model=payload.model,
            dims=len(embeddings.vectors[0]),
            vector=embeddings.vectors[0],
            text_hash=digest,
        )
        session.commit()
        logger.info("Product embedding generated and saved", product_id=product.id, embedding_id=row.id)
        return JobResult(
            success=True,
            processing_time_ms=_elapsed_ms(started),
            output={"product_id": product.id, "embedding_id": row.id, "text_hash": digest, "model_run_id": embeddings.run_id},
        )
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def handle_product_enrichment(record: JobRecord, system: "JobSystem") -> JobResult:
    payload = _expect_payload(record, ProductEnrichmentPayload)
    started = time.perf_counter()
    session = system.session_factory()
    try:
        product = get_product(session, payload.product_id)
        if product is None:
            logger.warning("Product not found, skipping enrichment", product_id=payload.product_id, job_id=record.job_id)
            return JobResult.skip("product-not-found", success=False, processing_time_ms=_elapsed_ms(started), product_id=payload.product_id)

        if payload.current_enrichment_version is not None and product.enrichment_version > payload.current_enrichment_version:
            logger.info(
                "Product already enriched with newer version, skipping",
                product_id=product.id,
                current=product.enrichment_version,
                job_version=payload.current_enrichment_version,
            )
            return JobResult.skip(
                "already-enriched",
                processing_time_ms=_elapsed_ms(started),
                product_id=product.id,
                enrichment_version=product.enrichment_version,
            )

        prompt = system.prompts.render(
            "product_enrichment",
            {
                "title": product.title,
                "brandName": product.brand.name if product.brand else "Unknown",
                "description": product.description or "",
                "price": product.default_price / 100 if product.default_price else "N/A",
                "currency": product.default_currency or "",
            },
            version=parse_prompt_version(payload.prompt_version),
        )
        try:
            completion = system.generation.complete(
                [
                    {"role": "system", "content": ENRICHMENT_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                purpose=LlmPurpose.PRODUCT_ENRICHMENT,
                response_format="json_object",
                trace_id=record.job_id,
            )
        except GenerationServiceError as e:
            if not e.retryable:
                raise NonRetryableJobError(str(e)) from e
            raise

        raw = parse_json_response(completion.content)
        try:
            data = EnrichmentOutput.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Enrichment response has unexpected shape: {e.error_count()} errors") from e

        product.gift_tags = data.gift_tags
        product.occasion_fit = data.occasion_fit
        product.style_tags = data.style_tags
        product.short_description = data.short_description or product.short_description
        product.enrichment_version = (product.enrichment_version or 0) + 1
        product.enrichment = raw
        session.commit()
        logger.info("Product enriched successfully", product_id=product.id, enrichment_version=product.enrichment_version)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    # Tags feed the embedding text, so the vector needs a refresh.
    follow_up = enqueue_product_embedding(system, product.id, triggered_by="enrichment")
    return JobResult(
        success=True,
        processing_time_ms=_elapsed_ms(started),
        output={
            "product_id": product.id,
            "enrichment_version": product.enrichment_version,
            "model_run_id": completion.run_id,
            "embedding_job_id": follow_up.record.job_id,
        },
    )


def handle_profile_embedding(record: JobRecord, system: "JobSystem") -> JobResult:
    payload = _expect_payload(record, ProfileEmbeddingPayload)
    started = time.perf_counter()
    session = system.session_factory()
    try:
        profile = session.get(TasteProfile, payload.taste_profile_id)
        if profile is None:
            logger.warning("Taste profile not found, skipping", taste_profile_id=payload.taste_profile_id)
            return JobResult.skip(
                "profile-not-found",
                success=False,
                processing_time_ms=_elapsed_ms(started),
                taste_profile_id=payload.taste_profile_id,
            )

        text = build_profile_embedding_text(profile)
        digest = text_hash(text)
        if profile.vector_text_hash == digest:
            logger.info("Taste profile embedding current, skipping", taste_profile_id=profile.id)
            return JobResult.skip("already-embedded", processing_time_ms=_elapsed_ms(started), taste_profile_id=profile.id)

        try:
            embeddings = system.generation.embed([text], purpose=LlmPurpose.PROFILE_EMBEDDING, trace_id=record.job_id)
        except GenerationServiceError as e:
            if not e.retryable:
                raise NonRetryableJobError(str(e)) from e
            raise

        vector = embeddings.vectors[0]
        profile.vector = [float(x) for x in vector]
        profile.vector_text_hash = digest
        profile.vector_updated_at = utc_now()
        profile.provider = payload.provider
        profile.model = payload.model
        profile.dims = len(vector)
        session.commit()
        logger.info("Taste profile embedding saved", taste_profile_id=profile.id, user_id=payload.user_id)
        return JobResult(
            success=True,
            processing_time_ms=_elapsed_ms(started),
            output={"taste_profile_id": profile.id, "text_hash": digest, "model_run_id": embeddings.run_id},
        )
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def handle_collection_generation(record: JobRecord, system: "JobSystem") -> JobResult:
    payload = _expect_payload(record, CollectionGenerationPayload)
    started = time.perf_counter()
    if payload.surface not in {s.value for s in CollectionSurface}:
        raise NonRetryableJobError(f"Unknown collection surface: {payload.surface}")
    try:
        target = date.fromisoformat(payload.target_date)
    except ValueError as e:
        raise NonRetryableJobError(f"Invalid target date: {payload.target_date}") from e

    if system.curator.collections_exist(payload.surface, target):
        logger.info("Collections already generated, skipping", surface=payload.surface, target_date=payload.target_date)
        return JobResult.skip(
            "already-exists",
            processing_time_ms=_elapsed_ms(started),
            surface=payload.surface,
            target_date=payload.target_date,
        )

    outcome = system.curator.generate_collections(payload, trace_id=record.job_id)
    return JobResult(success=True, processing_time_ms=_elapsed_ms(started), output=outcome.to_dict())


def handle_reminder_dispatch(record: JobRecord, system: "JobSystem") -> JobResult:
    payload = _expect_payload(record, ReminderDispatchPayload)
    started = time.perf_counter()
    session = system.session_factory()
    try:
        schedule = reminder_repo.get_schedule(session, payload.schedule_id)
        if schedule is None:
            logger.warning("Schedule not found, skipping", schedule_id=payload.schedule_id)
            return JobResult.skip(
                "schedule-not-found",
                success=False,
                processing_time_ms=_elapsed_ms(started),
                schedule_id=payload.schedule_id,
            )
        if schedule.status == NotificationStatus.SENT:
            logger.info("Schedule already sent, skipping", schedule_id=schedule.id)
            return JobResult.skip("already-sent", processing_time_ms=_elapsed_ms(started), schedule_id=schedule.id)

        try:
            notification = reminder_repo.record_sent(session, schedule, title=payload.title, body=payload.body, data=payload.data)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Reminder dispatch failed", schedule_id=payload.schedule_id, error=str(e))
            reminder_repo.record_failure(session, payload.schedule_id, str(e))
            session.commit()
            raise
        message = OutboundMessage(
            notification_id=notification.id,
            user_id=notification.user_id,
            channel=notification.channel,
            title=notification.title,
            body=notification.body,
            data=notification.data,
        )
    finally:
        session.close()

    system.delivery.submit(message)
    logger.info("Reminder dispatched", schedule_id=payload.schedule_id, notification_id=message.notification_id)
    return JobResult(
        success=True,
        processing_time_ms=_elapsed_ms(started),
        output={"schedule_id": payload.schedule_id, "notification_id": message.notification_id},
    )


DEFAULT_HANDLERS: dict[type, Handler] = {
    ProductEmbeddingPayload: handle_product_embedding,
    ProductEnrichmentPayload: handle_product_enrichment,
    ProfileEmbeddingPayload: handle_profile_embedding,
    CollectionGenerationPayload: handle_collection_generation,
    ReminderDispatchPayload: handle_reminder_dispatch,
}


class HandlerRegistry:
    """Maps every payload type to its handler; refuses to build with a kind left unmapped."""

    def __init__(self, system: "JobSystem", handlers: Mapping[type, Handler] | None = None):
        handlers = dict(handlers if handlers is not None else DEFAULT_HANDLERS)
        missing = sorted(cls.kind for cls in PAYLOAD_TYPES.values() if cls not in handlers)
        if missing:
            raise ValueError(f"No handler registered for job kinds: {', '.join(missing)}")
        self._system = system
        self._handlers = handlers

    def dispatch(self, record: JobRecord) -> JobResult:
        handler = self._handlers.get(type(record.payload))
        if handler is None:
            raise NonRetryableJobError(f"No handler for payload type {type(record.payload).__name__}")
        return handler(record, self._system)

    def kinds(self) -> list[str]:
        return sorted(cls.kind for cls in self._handlers)


__all__ = [
    "Handler",
    "HandlerRegistry",
    "DEFAULT_HANDLERS",
    "text_hash",
    "build_product_embedding_text",
    "build_profile_embedding_text",
    "handle_product_embedding",
    "handle_product_enrichment",
    "handle_profile_embedding",
    "handle_collection_generation",
    "handle_reminder_dispatch",
]
