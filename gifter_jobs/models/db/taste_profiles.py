from __future__ import annotations
"""SQLAlchemy model for questionnaire-derived taste profiles."""
import uuid
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from sqlalchemy.sql import func
from gifter_jobs.database import Base


class TasteProfile(Base):
    __tablename__ = "taste_profiles"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    recipient_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    mode: Mapped[str | None] = mapped_column(String, nullable=True)  # SELF | RECIPIENT
    answers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    facets: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    vector: Mapped[list | None] = mapped_column(JSON, nullable=True)
    vector_text_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vector_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    dims: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
