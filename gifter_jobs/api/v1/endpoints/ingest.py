"""
CMS webhook ingestion endpoints.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from gifter_jobs.api.deps import get_db, get_job_system, verify_internal_webhook
from gifter_jobs.jobs.system import JobSystem
from gifter_jobs.models.schemas.base import ResponseBase
from gifter_jobs.models.schemas.ingest import IngestResultRead, ProductChangedEvent
from gifter_jobs.services.ingestion import ingest_product_changed
from gifter_jobs.utils import get_logger, log_business_event

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/product-changed",
    response_model=ResponseBase,
    summary="Mirror a changed product and enqueue enrichment / embedding"
)
async def product_changed(
    event: ProductChangedEvent,
    request: Request,
    db: Session = Depends(get_db),
    system: JobSystem = Depends(get_job_system),
    _: bool = Depends(verify_internal_webhook),
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    result = ingest_product_changed(db, event, system)
    read = IngestResultRead(
        brand_id=result.brand_id,
        product_id=result.product_id,
        created=result.created,
        significant_change=result.plan.significant_change,
        enrichment_enqueued=result.enrichment_enqueued,
        embedding_enqueued=result.embedding_enqueued,
        reason=result.plan.reason,
    )
    log_business_event(
        "product_ingested",
        {"product_id": result.product_id, "created": result.created, "request_id": request_id},
    )
    return ResponseBase(success=True, message="Product ingested", data=read.model_dump())
