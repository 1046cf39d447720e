"""
Structured output expected back from the generation service.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, AliasChoices


class CollectionFiltersSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_ids: List[str] = Field(default_factory=list, validation_alias=AliasChoices("productIds", "product_ids"))
    max_items: Optional[int] = Field(None, validation_alias=AliasChoices("maxItems", "max_items"))


class CollectionSpec(BaseModel):
    """One generated collection before persistence."""
    model_config = ConfigDict(extra="ignore")

    key: Optional[str] = None
    title: str = Field(min_length=1)
    subtitle: Optional[str] = None
    description: Optional[str] = None
    filters: CollectionFiltersSpec = Field(default_factory=CollectionFiltersSpec)
    editorial_vibe: Optional[str] = None

    @property
    def product_ids(self) -> List[str]:
        return self.filters.product_ids


class GeneratedCollections(BaseModel):
    model_config = ConfigDict(extra="ignore")

    collections: List[CollectionSpec] = Field(default_factory=list)


class EnrichmentOutput(BaseModel):
    """Product enrichment response; unknown keys are kept in the raw payload only."""
    model_config = ConfigDict(extra="ignore")

    gift_tags: List[str] = Field(default_factory=list, validation_alias=AliasChoices("giftTags", "gift_tags"))
    occasion_fit: List[str] = Field(default_factory=list, validation_alias=AliasChoices("occasionFit", "occasion_fit"))
    style_tags: List[str] = Field(default_factory=list, validation_alias=AliasChoices("styleTags", "style_tags"))
    short_description: Optional[str] = Field(None, validation_alias=AliasChoices("shortDescription", "short_description"))
