from .base import ResponseBase, ErrorResponse
from .curation import CollectionFiltersSpec, CollectionSpec, GeneratedCollections, EnrichmentOutput
from .jobs import CollectionFiltersIn, CollectionGenerationRequest, JobRead
from .ingest import BrandChanged, ProductChanged, ProductChangedEvent, IngestResultRead

__all__ = [
    # Base
    "ResponseBase",
    "ErrorResponse",

    # Generation output
    "CollectionFiltersSpec",
    "CollectionSpec",
    "GeneratedCollections",
    "EnrichmentOutput",

    # Jobs
    "CollectionFiltersIn",
    "CollectionGenerationRequest",
    "JobRead",

    # Ingestion
    "BrandChanged",
    "ProductChanged",
    "ProductChangedEvent",
    "IngestResultRead",
]
