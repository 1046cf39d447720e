from __future__ import annotations
"""SQLAlchemy models for the mirrored catalog (brands, products, product embeddings).

Rows are keyed by an internal uuid and upserted by the CMS natural key
(``payload_brand_id`` / ``payload_product_id``).
"""
import uuid
from datetime import datetime
from sqlalchemy import Integer, String, Text, Boolean, DateTime, Enum, ForeignKey, JSON
from sqlalchemy.orm import relationship, Mapped, mapped_column

from sqlalchemy.sql import func
from gifter_jobs.database import Base
from .enums import ProductPublishStatus


def _uuid() -> str:
    return str(uuid.uuid4())


class Brand(Base):
    __tablename__ = "brands"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    payload_brand_id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str | None] = mapped_column(String, nullable=True)
    gift_style: Mapped[str | None] = mapped_column(String, nullable=True)
    style_tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    products: Mapped[list["ProductMirror"]] = relationship("ProductMirror", back_populates="brand")


class ProductMirror(Base):
    __tablename__ = "product_mirrors"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    payload_product_id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    brand_id: Mapped[str] = mapped_column(String(36), ForeignKey("brands.id"), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    short_description: Mapped[str | None] = mapped_column(String, nullable=True)
    specs: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    default_price: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minor units
    default_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[ProductPublishStatus] = mapped_column(Enum(ProductPublishStatus), default=ProductPublishStatus.DRAFT, index=True)
    visible_to_gifter: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False)

    # Enrichment output
    gift_tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    occasion_fit: Mapped[list | None] = mapped_column(JSON, nullable=True)
    style_tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    enrichment: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    enrichment_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    brand: Mapped["Brand"] = relationship("Brand", back_populates="products")
    embeddings: Mapped[list["ProductEmbedding"]] = relationship(
        "ProductEmbedding", back_populates="product", cascade="all, delete-orphan"
    )


class ProductEmbedding(Base):
    __tablename__ = "product_embeddings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("product_mirrors.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False, index=True)
    dims: Mapped[int] = mapped_column(Integer, nullable=False)
    # Stored as a JSON float array; the point store converts to numpy on read.
    vector: Mapped[list] = mapped_column(JSON, nullable=False)
    text_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    product: Mapped["ProductMirror"] = relationship("ProductMirror", back_populates="embeddings")
