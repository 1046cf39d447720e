"""Catalog mirror queries and natural-key upserts."""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from gifter_jobs.jobs.payloads import CollectionFilters
from gifter_jobs.models.db import Brand, ProductMirror, ProductPublishStatus


def get_product(session: Session, product_id: str) -> Optional[ProductMirror]:
    stmt = select(ProductMirror).options(joinedload(ProductMirror.brand)).where(ProductMirror.id == product_id)
    return session.scalars(stmt).first()


def get_product_by_payload_id(session: Session, payload_product_id: str) -> Optional[ProductMirror]:
    stmt = select(ProductMirror).options(joinedload(ProductMirror.brand)).where(ProductMirror.payload_product_id == payload_product_id)
    return session.scalars(stmt).first()


def fetch_candidate_pool(session: Session, filters: CollectionFilters | None = None, *, limit: int = 1000) -> list[ProductMirror]:
    """Published, gifter-visible products matching ``filters``, newest first.

    Products hidden from gifters are excluded as well, matching
    ``should_process_product``: they never get an embedding, and collections
    must not surface a product the storefront hides.
    """
    filters = filters or CollectionFilters()
    stmt = (
        select(ProductMirror)
        .options(joinedload(ProductMirror.brand))
        .where(ProductMirror.status == ProductPublishStatus.PUBLISHED)
        .where(ProductMirror.visible_to_gifter.is_(True))
    )
    if filters.min_price is not None:
        stmt = stmt.where(ProductMirror.default_price >= filters.min_price)
    if filters.max_price is not None:
        stmt = stmt.where(ProductMirror.default_price <= filters.max_price)
    if filters.brand_ids:
        stmt = stmt.where(ProductMirror.brand_id.in_(list(filters.brand_ids)))
    if filters.exclude_product_ids:
        stmt = stmt.where(ProductMirror.id.not_in(list(filters.exclude_product_ids)))
    if filters.is_featured is not None:
        stmt = stmt.where(ProductMirror.is_featured.is_(filters.is_featured))
    stmt = stmt.order_by(ProductMirror.created_at.desc(), ProductMirror.id).limit(limit)
    return list(session.scalars(stmt).unique())


def upsert_brand(session: Session, payload_brand_id: str, fields: dict[str, Any]) -> Brand:
    brand = session.scalars(select(Brand).where(Brand.payload_brand_id == payload_brand_id)).first()
    if brand is None:
        brand = Brand(payload_brand_id=payload_brand_id, **fields)
        session.add(brand)
    else:
        for key, value in fields.items():
            setattr(brand, key, value)
    session.flush()
    return brand


def upsert_product(session: Session, payload_product_id: str, fields: dict[str, Any]) -> tuple[ProductMirror, bool]:
    """Insert or update by natural key; returns (product, created)."""
    product = session.scalars(select(ProductMirror).where(ProductMirror.payload_product_id == payload_product_id)).first()
    created = product is None
    if product is None:
        product = ProductMirror(payload_product_id=payload_product_id, **fields)
        session.add(product)
    else:
        for key, value in fields.items():
            setattr(product, key, value)
    session.flush()
    return product, created


__all__ = [
    "get_product",
    "get_product_by_payload_id",
    "fetch_candidate_pool",
    "upsert_brand",
    "upsert_product",
]
