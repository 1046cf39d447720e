from __future__ import annotations
"""SQLAlchemy model recording every generation / embedding provider call."""
import uuid
from datetime import datetime
from sqlalchemy import Integer, String, Float, Text, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column

from sqlalchemy.sql import func
from gifter_jobs.database import Base
from .enums import LlmPurpose, ModelRunStatus


class ModelRun(Base):
    __tablename__ = "model_runs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    purpose: Mapped[LlmPurpose] = mapped_column(Enum(LlmPurpose), nullable=False, index=True)
    trace_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[ModelRunStatus] = mapped_column(Enum(ModelRunStatus), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
