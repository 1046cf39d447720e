"""Curated collection persistence: existence checks, creation and expiry sweep."""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from gifter_jobs.models.db import CuratedCollection, CuratedCollectionItem
from gifter_jobs.utils.time import start_of_day

GENERATED_BY_AI = "ai"


def collections_exist(session: Session, surface: str, day: date) -> bool:
    """True when AI collections for ``surface`` start within ``day`` (UTC)."""
    start = start_of_day(day)
    end = start + timedelta(days=1)
    stmt = (
        select(func.count(CuratedCollection.id))
        .where(CuratedCollection.surface == surface)
        .where(CuratedCollection.generated_by == GENERATED_BY_AI)
        .where(CuratedCollection.valid_from >= start)
        .where(CuratedCollection.valid_from < end)
    )
    return bool(session.scalar(stmt))


def key_exists(session: Session, key: str) -> bool:
    return session.scalar(select(func.count(CuratedCollection.id)).where(CuratedCollection.key == key)) > 0


def create_collection(
    session: Session,
    *,
    key: str,
    title: str,
    subtitle: Optional[str],
    description: Optional[str],
    surface: str,
    valid_from: datetime,
    valid_to: datetime,
    product_ids: Sequence[str],
    cover_image_url: Optional[str] = None,
    cover_image_attribution: Optional[str] = None,
    generation_meta: Optional[dict[str, Any]] = None,
) -> CuratedCollection:
    if not valid_from < valid_to:
        raise ValueError("valid_from must be earlier than valid_to")
    collection = CuratedCollection(
        key=key,
        title=title,
        subtitle=subtitle,
        description=description,
        surface=surface,
        generated_by=GENERATED_BY_AI,
        valid_from=valid_from,
        valid_to=valid_to,
        cover_image_url=cover_image_url,
        cover_image_attribution=cover_image_attribution,
        generation_meta=generation_meta,
    )
    collection.items = [
        CuratedCollectionItem(product_id=pid, rank=rank)
        for rank, pid in enumerate(product_ids, start=1)
    ]
    session.add(collection)
    session.flush()
    return collection


def list_collections(session: Session, surface: Optional[str] = None) -> list[CuratedCollection]:
    stmt = select(CuratedCollection).order_by(CuratedCollection.created_at, CuratedCollection.key)
    if surface is not None:
        stmt = stmt.where(CuratedCollection.surface == surface)
    return list(session.scalars(stmt))


def delete_expired(session: Session, now: datetime) -> int:
    """Delete collections whose ``valid_to`` is before ``now`` along with their items."""
    expired_ids = list(session.scalars(select(CuratedCollection.id).where(CuratedCollection.valid_to < now)))
    if not expired_ids:
        return 0
    session.execute(delete(CuratedCollectionItem).where(CuratedCollectionItem.collection_id.in_(expired_ids)))
    session.execute(delete(CuratedCollection).where(CuratedCollection.id.in_(expired_ids)))
    return len(expired_ids)


__all__ = [
    "GENERATED_BY_AI",
    "collections_exist",
    "key_exists",
    "create_collection",
    "list_collections",
    "delete_expired",
]
