"""
Job inspection and manual trigger endpoints.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from gifter_jobs.api.deps import get_job_system, get_scheduler
from gifter_jobs.jobs.enqueue import enqueue_curated_collections
from gifter_jobs.jobs.models import JobOptions
from gifter_jobs.jobs.payloads import CollectionFilters
from gifter_jobs.jobs.scheduler import Scheduler
from gifter_jobs.jobs.system import JobSystem
from gifter_jobs.models.db import CollectionSurface
from gifter_jobs.models.schemas.base import ResponseBase
from gifter_jobs.models.schemas.jobs import CollectionGenerationRequest, JobRead
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.time import utc_today

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/queues",
    response_model=ResponseBase,
    summary="Snapshot of every job queue"
)
async def queues_snapshot(request: Request, system: JobSystem = Depends(get_job_system)) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    return ResponseBase(success=True, message="Queue snapshot", data={"queues": system.snapshot(), "request_id": request_id})


@router.get(
    "/scheduler",
    response_model=ResponseBase,
    summary="Recurring task status"
)
async def scheduler_status(scheduler: Optional[Scheduler] = Depends(get_scheduler)) -> ResponseBase:
    if scheduler is None:
        return ResponseBase(success=True, message="Scheduler disabled", data={"running": False, "tasks": []})
    return ResponseBase(
        success=True,
        message="Scheduler status",
        data={"running": scheduler.is_running(), "tasks": scheduler.status()},
    )


@router.post(
    "/collections",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a curated-collections run"
)
async def trigger_collections(
    body: CollectionGenerationRequest,
    request: Request,
    system: JobSystem = Depends(get_job_system),
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    if body.surface not in {s.value for s in CollectionSurface}:
        raise HTTPException(status_code=400, detail=f"Unknown surface '{body.surface}'")
    target = body.target_date or utc_today()
    try:
        result = enqueue_curated_collections(
            system,
            body.surface,
            target,
            collections_count=body.collections_count,
            products_per_collection=body.products_per_collection,
            filters=CollectionFilters.from_dict(body.filters.model_dump()),
            triggered_by="api",
            options=JobOptions(priority=body.priority) if body.priority else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(
        "Manual collection generation requested",
        surface=body.surface,
        target_date=target.isoformat(),
        job_id=result.record.job_id,
        created=result.created,
        request_id=request_id,
    )
    return ResponseBase(
        success=True,
        message="Collection generation enqueued" if result.created else "Collection generation already in progress",
        data={
            "job_id": result.record.job_id,
            "idempotency_key": result.record.idempotency_key,
            "created": result.created,
            "state": result.record.state.value,
        },
    )


@router.get(
    "/{queue_name}/{job_id}",
    response_model=JobRead,
    summary="Get a job record"
)
async def get_job(queue_name: str, job_id: str, system: JobSystem = Depends(get_job_system)) -> JobRead:
    try:
        queue = system.queue(queue_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Queue '{queue_name}' not found")
    record = queue.get(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobRead.from_record_dict(record.to_dict())
