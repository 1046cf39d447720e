"""Vector point store access: product embeddings keyed by product and model."""
from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from gifter_jobs.models.db import ProductEmbedding
from gifter_jobs.services.clustering import Point


def fetch_points(session: Session, product_ids: Sequence[str], *, model: Optional[str] = None) -> list[Point]:
    """Return one Point per product that has an embedding, in ``product_ids`` order.

    Products without a stored embedding are left out. When a product has
    several rows (one per model), the newest row for ``model`` wins, or the
    newest row overall when ``model`` is None.
    """
    if not product_ids:
        return []
    stmt = select(ProductEmbedding).where(ProductEmbedding.product_id.in_(list(product_ids)))
    if model is not None:
        stmt = stmt.where(ProductEmbedding.model == model)
    stmt = stmt.order_by(ProductEmbedding.created_at.asc())
    latest: dict[str, ProductEmbedding] = {}
    for row in session.scalars(stmt):
        latest[row.product_id] = row
    return [
        Point(id=pid, vector=tuple(float(x) for x in latest[pid].vector))
        for pid in product_ids
        if pid in latest and latest[pid].vector
    ]


def get_embedding(session: Session, product_id: str, model: str) -> Optional[ProductEmbedding]:
    stmt = (
        select(ProductEmbedding)
        .where(ProductEmbedding.product_id == product_id, ProductEmbedding.model == model)
        .order_by(ProductEmbedding.created_at.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def replace_embedding(
    session: Session,
    *,
    product_id: str,
    provider: str,
    model: str,
    dims: int,
    vector: Sequence[float],
    text_hash: str,
) -> ProductEmbedding:
    """Drop any embedding for (product, model) and insert the new one."""
    session.execute(
        delete(ProductEmbedding).where(ProductEmbedding.product_id == product_id, ProductEmbedding.model == model)
    )
    row = ProductEmbedding(
        product_id=product_id,
        provider=provider,
        model=model,
        dims=dims,
        vector=[float(x) for x in vector],
        text_hash=text_hash,
    )
    session.add(row)
    session.flush()
    return row


__all__ = ["fetch_points", "get_embedding", "replace_embedding"]
