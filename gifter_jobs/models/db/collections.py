from __future__ import annotations
"""SQLAlchemy models for generated curated collections and their ranked items."""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, JSON, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .catalog import ProductMirror
from sqlalchemy.sql import func
from gifter_jobs.database import Base


class CuratedCollection(Base):
    __tablename__ = "curated_collections"
    __table_args__ = (
        CheckConstraint("valid_from < valid_to", name="ck_curated_collections_validity_window"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    key: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    subtitle: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    surface: Mapped[str] = mapped_column(String, nullable=False, index=True)
    generated_by: Mapped[str] = mapped_column(String, default="ai", index=True)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    valid_to: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    cover_image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    cover_image_attribution: Mapped[str | None] = mapped_column(String, nullable=True)
    # editorial_vibe, generated_at, model_run_id
    generation_meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    items: Mapped[list["CuratedCollectionItem"]] = relationship(
        "CuratedCollectionItem",
        back_populates="collection",
        cascade="all, delete-orphan",
        order_by="CuratedCollectionItem.rank",
    )


class CuratedCollectionItem(Base):
    __tablename__ = "curated_collection_items"
    __table_args__ = (
        UniqueConstraint("collection_id", "product_id", name="uq_collection_item_product"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(String(36), ForeignKey("curated_collections.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("product_mirrors.id"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)

    collection: Mapped["CuratedCollection"] = relationship("CuratedCollection", back_populates="items")
    product: Mapped["ProductMirror"] = relationship("ProductMirror")
