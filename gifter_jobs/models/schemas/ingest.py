"""
Pydantic schemas for the product.changed ingestion webhook.
"""
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, AliasChoices


class BrandChanged(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    payload_brand_id: str = Field(min_length=1, validation_alias=AliasChoices("payloadBrandId", "payload_brand_id"))
    name: str = Field(min_length=1)
    slug: Optional[str] = None
    gift_style: Optional[str] = Field(None, validation_alias=AliasChoices("giftFit", "gift_style"))
    style_tags: Optional[List[str]] = Field(None, validation_alias=AliasChoices("styleTags", "style_tags"))


class ProductChanged(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1)
    slug: Optional[str] = None
    status: str = "DRAFT"
    visible_to_gifter: Optional[bool] = Field(None, validation_alias=AliasChoices("visibleToGifter", "visible_to_gifter"))
    is_featured: Optional[bool] = Field(None, validation_alias=AliasChoices("isFeatured", "is_featured"))
    short_description: Optional[str] = Field(None, validation_alias=AliasChoices("shortDescription", "short_description"))
    description: Optional[str] = None
    specs: Optional[Any] = None
    image_url: Optional[str] = Field(None, validation_alias=AliasChoices("primaryImageUrl", "image_url"))
    default_price: Optional[int] = Field(None, validation_alias=AliasChoices("defaultPrice", "default_price"))
    default_currency: Optional[str] = Field(None, validation_alias=AliasChoices("defaultCurrency", "default_currency"))
    gift_tags: Optional[List[str]] = Field(None, validation_alias=AliasChoices("giftTags", "gift_tags"))
    occasion_fit: Optional[List[str]] = Field(None, validation_alias=AliasChoices("occasionFit", "occasion_fit"))
    style_tags: Optional[List[str]] = Field(None, validation_alias=AliasChoices("styleTags", "style_tags"))


class ProductChangedEvent(BaseModel):
    """Webhook body sent by the CMS whenever a product (or its brand) changes."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: Literal["product.changed"] = "product.changed"
    payload_product_id: str = Field(min_length=1, validation_alias=AliasChoices("payloadProductId", "payload_product_id"))
    brand: BrandChanged
    product: ProductChanged
    ts: Optional[str] = None


class IngestResultRead(BaseModel):
    brand_id: str
    product_id: str
    created: bool
    significant_change: bool
    enrichment_enqueued: bool
    embedding_enqueued: bool
    reason: Optional[str] = None
