"""
Pydantic schemas for the job inspection / trigger endpoints.
"""
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from gifter_jobs.config import CURATION_SETTINGS


class CollectionFiltersIn(BaseModel):
    min_price: Optional[int] = Field(None, ge=0, description="Minimum default price in minor units")
    max_price: Optional[int] = Field(None, ge=0, description="Maximum default price in minor units")
    brand_ids: List[str] = Field(default_factory=list)
    exclude_product_ids: List[str] = Field(default_factory=list)
    is_featured: Optional[bool] = None


class CollectionGenerationRequest(BaseModel):
    """Manual trigger for a curated-collections run."""
    surface: str = Field(description="home | discovery | occasion")
    target_date: Optional[date] = Field(None, description="Defaults to today (UTC)")
    collections_count: int = Field(int(CURATION_SETTINGS["default_collections_count"]), ge=1, le=20)
    products_per_collection: int = Field(int(CURATION_SETTINGS["default_products_per_collection"]), ge=1, le=50)
    filters: CollectionFiltersIn = Field(default_factory=CollectionFiltersIn)
    priority: Optional[str] = Field(None, description="critical | high | normal | low")


class JobRead(BaseModel):
    job_id: str
    queue: str
    idempotency_key: str
    state: str
    priority: int
    attempts_made: int
    max_attempts: int
    created_at: float
    ready_at: float
    finished_at: Optional[float] = None
    last_error: Optional[str] = None
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None

    @classmethod
    def from_record_dict(cls, data: Dict[str, Any]) -> "JobRead":
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})
