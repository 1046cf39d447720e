"""Collection curator pipeline.

``CollectionCurator.generate_collections(payload)``:
1. Fetches the candidate pool (published, visible, filtered, newest first).
2. Aborts with zero collections when the pool is smaller than the minimum.
3. Loads pool embeddings and clusters them (k = pool // 30, capped).
4. Scores clusters and keeps the best ``collections_count``.
5. Asks the generation service for one collection per cluster.
6. Persists each spec (members restricted to the cluster, unique key,
   validity window, cover image) in its own transaction.
7. Logs and skips a cluster that fails at any step.

``cleanup_expired`` deletes collections whose validity window has ended.
"""
from __future__ import annotations

import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

import numpy as np
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gifter_jobs.config import CLUSTERING_SETTINGS, CURATION_SETTINGS
from gifter_jobs.jobs.payloads import CollectionGenerationPayload
from gifter_jobs.models.db import LlmPurpose, ProductMirror
from gifter_jobs.models.schemas.curation import CollectionSpec, GeneratedCollections
from gifter_jobs.repositories import collections as collection_repo
from gifter_jobs.repositories.embeddings import fetch_points
from gifter_jobs.repositories.products import fetch_candidate_pool
from gifter_jobs.services.clustering import Cluster, cluster_points, score_clusters
from gifter_jobs.services.generation import (
    GenerationParseError,
    GenerationService,
    GenerationServiceError,
    parse_json_response,
)
from gifter_jobs.services.image_search import ImageSearchService
from gifter_jobs.services.prompts import DEFAULT_PROMPTS, PromptLibrary, parse_prompt_version
from gifter_jobs.utils import get_logger, log_business_event, log_performance
from gifter_jobs.utils.time import start_of_day, utc_now

logger = get_logger(__name__)

PROMPT_KEY = "curated_collections"
_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class CurationOutcome:
    surface: str
    target_date: str
    pool_size: int = 0
    cluster_count: int = 0
    collections_created: int = 0
    collection_ids: list[str] = field(default_factory=list)
    failed_clusters: int = 0
    model_run_id: Optional[str] = None
    aborted_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "surface": self.surface,
            "target_date": self.target_date,
            "pool_size": self.pool_size,
            "cluster_count": self.cluster_count,
            "collections_created": self.collections_created,
            "collection_ids": list(self.collection_ids),
            "failed_clusters": self.failed_clusters,
            "model_run_id": self.model_run_id,
            "aborted_reason": self.aborted_reason,
        }


def determine_season(day: date) -> str:
    month = day.month
    if month >= 12 or month <= 2:
        return "winter / holiday season"
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    return "autumn"


def slugify(value: str) -> str:
    return _SLUG_RE.sub("-", (value or "").lower()).strip("-") or "collection"


def cluster_count_for_pool(pool_size: int) -> int:
    return min(pool_size // int(CURATION_SETTINGS["items_per_cluster"]), int(CURATION_SETTINGS["max_clusters"]))


def validity_window(target_date: date) -> tuple[datetime, datetime]:
    valid_from = start_of_day(target_date)
    return valid_from, valid_from + timedelta(days=int(CURATION_SETTINGS["validity_days"]))


def _product_summary(product: ProductMirror) -> dict[str, Any]:
    return {
        "id": product.id,
        "title": product.title,
        "brand": product.brand.name if product.brand else "Unknown",
        "price": product.default_price,
        "tags": product.gift_tags or [],
        "occasions": product.occasion_fit or [],
        "style": product.style_tags or [],
    }


class CollectionCurator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        generation: GenerationService,
        images: ImageSearchService,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
        *,
        rng: Optional[np.random.Generator] = None,
    ):
        self._session_factory = session_factory
        self.generation = generation
        self.images = images
        self.prompts = prompts
        self._rng = rng

    def collections_exist(self, surface: str, target_date: date) -> bool:
        session = self._session_factory()
        try:
            return collection_repo.collections_exist(session, surface, target_date)
        finally:
            session.close()

    def generate_collections(self, payload: CollectionGenerationPayload, *, trace_id: Optional[str] = None) -> CurationOutcome:
        started = time.perf_counter()
        trace_id = trace_id or str(uuid.uuid4())
        target = date.fromisoformat(payload.target_date)
        outcome = CurationOutcome(surface=payload.surface, target_date=payload.target_date)
        logger.info(
            "Starting collection generation",
            surface=payload.surface,
            target_date=payload.target_date,
            trace_id=trace_id,
        )

        session = self._session_factory()
        try:
            pool = fetch_candidate_pool(session, payload.filters, limit=int(CURATION_SETTINGS["pool_size_limit"]))
            outcome.pool_size = len(pool)
            min_pool = int(CURATION_SETTINGS["min_pool_size"])
            if len(pool) < min_pool:
                logger.warning("Product pool too small for clustering", pool_size=len(pool), minimum=min_pool, trace_id=trace_id)
                outcome.aborted_reason = "pool-too-small"
                return outcome

            k = cluster_count_for_pool(len(pool))
            if k < int(CURATION_SETTINGS["min_clusters"]):
                logger.warning("Not enough clusters for curation", pool_size=len(pool), k=k, trace_id=trace_id)
                outcome.aborted_reason = "too-few-clusters"
                return outcome

            points = fetch_points(session, [p.id for p in pool], model=self.generation.embedding_model)
            if len(points) < k:
                logger.warning("Not enough embedded products to cluster", embedded=len(points), k=k, trace_id=trace_id)
                outcome.aborted_reason = "too-few-embeddings"
                return outcome

            clustering = cluster_points(
                points,
                k,
                max_iterations=int(CLUSTERING_SETTINGS["max_iterations"]),
                tolerance=float(CLUSTERING_SETTINGS["convergence_tolerance"]),
                rng=self._rng,
            )
            if clustering.skipped_ids:
                logger.warning(
                    "Skipped embeddings with mismatched dimensions",
                    skipped=len(clustering.skipped_ids),
                    embedding_model=self.generation.embedding_model,
                    trace_id=trace_id,
                )
            ranked = score_clusters(clustering.clusters)
            top = ranked[: payload.collections_count]
            outcome.cluster_count = len(clustering.clusters)
            logger.info(
                "Clustering complete",
                pool_size=len(pool),
                clusters_found=len(clustering.clusters),
                top_clusters=len(top),
                iterations=clustering.iterations,
                converged=clustering.converged,
                trace_id=trace_id,
            )
            products_by_id = {p.id: p for p in pool}
            cluster_products = [
                [products_by_id[pid] for pid in cluster.member_ids if pid in products_by_id]
                for cluster in top
            ]
        finally:
            session.close()

        season = determine_season(target)
        for cluster, members in zip(top, cluster_products):
            if outcome.collections_created >= payload.collections_count:
                break
            try:
                self._curate_cluster(cluster, members, payload, target, season, trace_id, outcome)
            except (GenerationServiceError, GenerationParseError, ValidationError, SQLAlchemyError, ValueError) as e:
                outcome.failed_clusters += 1
                logger.error(
                    "Failed to process cluster",
                    cluster_size=cluster.size,
                    error=str(e),
                    error_type=type(e).__name__,
                    trace_id=trace_id,
                )

        elapsed_ms = (time.perf_counter() - started) * 1000
        log_performance("generate_collections", elapsed_ms, {"surface": payload.surface, "trace_id": trace_id})
        log_business_event(
            "collections_generated",
            {
                "surface": payload.surface,
                "target_date": payload.target_date,
                "collections_created": outcome.collections_created,
                "failed_clusters": outcome.failed_clusters,
            },
        )
        return outcome

    def _curate_cluster(
        self,
        cluster: Cluster,
        members: list[ProductMirror],
        payload: CollectionGenerationPayload,
        target: date,
        season: str,
        trace_id: str,
        outcome: CurationOutcome,
    ) -> None:
        system_prompt = self.prompts.render(
            PROMPT_KEY,
            {
                "date": payload.target_date,
                "season": season,
                "productCount": len(members),
                "isCluster": True,
                "maxItems": payload.products_per_collection,
            },
            version=parse_prompt_version(payload.prompt_version),
        )
        summary = json.dumps([_product_summary(p) for p in members], indent=2)
        completion = self.generation.complete(
            [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": (
                        f"Here is a cluster of potentially related products:\n{summary}\n\n"
                        f"Create ONE high-quality curated collection from these items. "
                        f"Select the best {payload.products_per_collection} items."
                    ),
                },
            ],
            purpose=LlmPurpose.CURATED_COLLECTIONS,
            temperature=float(CURATION_SETTINGS["temperature"]),
            response_format="json_object",
            trace_id=trace_id,
        )
        outcome.model_run_id = completion.run_id or outcome.model_run_id
        generated = GeneratedCollections.model_validate(parse_json_response(completion.content))

        allowed = set(cluster.member_ids)
        for spec in generated.collections:
            if outcome.collections_created >= payload.collections_count:
                return
            collection_id = self._persist(spec, allowed, payload, target, completion.run_id)
            if collection_id is not None:
                outcome.collections_created += 1
                outcome.collection_ids.append(collection_id)

    def _persist(
        self,
        spec: CollectionSpec,
        allowed: set[str],
        payload: CollectionGenerationPayload,
        target: date,
        model_run_id: Optional[str],
    ) -> Optional[str]:
        product_ids: list[str] = []
        for pid in spec.product_ids:
            if pid in allowed and pid not in product_ids:
                product_ids.append(pid)
        product_ids = product_ids[: payload.products_per_collection]
        if not product_ids:
            logger.warning("Generated collection references no cluster products", title=spec.title)
            return None

        cover = self.images.cover_for_vibe(spec.editorial_vibe or "")
        valid_from, valid_to = validity_window(target)
        session = self._session_factory()
        try:
            key = slugify(spec.key or spec.title)
            if collection_repo.key_exists(session, key):
                key = f"{key}-{secrets.token_hex(3)}"
            collection = collection_repo.create_collection(
                session,
                key=key,
                title=spec.title,
                subtitle=spec.subtitle,
                description=spec.description,
                surface=payload.surface,
                valid_from=valid_from,
                valid_to=valid_to,
                product_ids=product_ids,
                cover_image_url=cover.url,
                cover_image_attribution=cover.attribution,
                generation_meta={
                    "editorial_vibe": spec.editorial_vibe,
                    "generated_at": utc_now().isoformat(),
                    "model_run_id": model_run_id,
                    "cover_photo_id": cover.photo_id,
                },
            )
            session.commit()
            logger.info("Collection created", collection_id=collection.id, key=key, title=spec.title, items=len(product_ids))
            return collection.id
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        session = self._session_factory()
        try:
            deleted = collection_repo.delete_expired(session, now)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()
        logger.info("Expired collections cleaned up", deleted=deleted)
        return deleted


__all__ = [
    "CollectionCurator",
    "CurationOutcome",
    "determine_season",
    "slugify",
    "cluster_count_for_pool",
    "validity_window",
]
