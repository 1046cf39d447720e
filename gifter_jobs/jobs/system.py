"""Process-wide job context: queues, handler registry, worker pools and collaborators.

Built once at startup and handed to the scheduler, the API layer and every
handler. ``shutdown`` stops pools from reserving, closes the queues and waits
(bounded) for in-flight jobs.
"""
from __future__ import annotations

from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy.orm import Session

from gifter_jobs.config import WORKER_SETTINGS
from gifter_jobs.jobs.handlers import Handler, HandlerRegistry
from gifter_jobs.jobs.models import EnqueueResult, JobOptions, JobRecord
from gifter_jobs.jobs.payloads import PAYLOAD_TYPES, JobPayload
from gifter_jobs.jobs.worker import QueueProtocol, WorkerPool, create_queue
from gifter_jobs.services.curator import CollectionCurator
from gifter_jobs.services.generation import GenerationService
from gifter_jobs.services.image_search import ImageSearchService
from gifter_jobs.services.notifications import BackgroundDelivery
from gifter_jobs.services.prompts import DEFAULT_PROMPTS, PromptLibrary
from gifter_jobs.utils import get_logger, log_business_event

logger = get_logger(__name__)


class JobSystem:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        generation: Optional[GenerationService] = None,
        images: Optional[ImageSearchService] = None,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
        curator: Optional[CollectionCurator] = None,
        delivery: Optional[BackgroundDelivery] = None,
        queues: Optional[Mapping[str, QueueProtocol]] = None,
        handlers: Optional[Mapping[type, Handler]] = None,
        queue_factory: Callable[[str], QueueProtocol] = create_queue,
    ):
        self.session_factory = session_factory
        self.generation = generation or GenerationService(session_factory)
        self.images = images or ImageSearchService()
        self.prompts = prompts
        self.curator = curator or CollectionCurator(session_factory, self.generation, self.images, prompts)
        self.delivery = delivery or BackgroundDelivery(session_factory)
        provided = dict(queues or {})
        self.queues: dict[str, QueueProtocol] = {
            name: provided[name] if name in provided else queue_factory(name)
            for name in PAYLOAD_TYPES
        }
        self.registry = HandlerRegistry(self, handlers)
        self.pools: dict[str, WorkerPool] = {}

    def queue(self, name: str) -> QueueProtocol:
        try:
            return self.queues[name]
        except KeyError:
            raise KeyError(f"Unknown queue: {name}") from None

    def enqueue(self, payload: JobPayload, options: Optional[JobOptions] = None) -> EnqueueResult:
        queue = self.queue(payload.kind)
        result = queue.enqueue(payload, payload.idempotency_key(), options)
        if result.created:
            log_business_event(
                "job_enqueued",
                {"idempotency_key": result.record.idempotency_key, "triggered_by": payload.triggered_by},
                job_id=result.record.job_id,
                queue=queue.name,
            )
        else:
            logger.info(
                "Job already active, enqueue is a no-op",
                queue=queue.name,
                job_id=result.record.job_id,
                idempotency_key=result.record.idempotency_key,
            )
        return result

    def pool(self, name: str) -> WorkerPool:
        """Worker pool for ``name`` (created on first use, not started)."""
        if name not in self.pools:
            concurrency = int(WORKER_SETTINGS["concurrency"].get(name, 1))  # type: ignore[index, union-attr]
            self.pools[name] = WorkerPool(self.queue(name), self.registry.dispatch, concurrency=concurrency)
        return self.pools[name]

    def start_workers(self, names: Optional[Iterable[str]] = None) -> None:
        for name in names or self.queues:
            self.pool(name).start()

    def run_pending(self, name: str, *, limit: int = 100) -> list[JobRecord]:
        """Synchronously process up to ``limit`` ready jobs from one queue."""
        processed: list[JobRecord] = []
        pool = self.pool(name)
        while len(processed) < limit:
            record = pool.process_next(timeout=0.0)
            if record is None:
                break
            processed.append(record)
        return processed

    def snapshot(self) -> dict[str, dict]:
        return {name: queue.snapshot() for name, queue in self.queues.items()}

    def shutdown(self, timeout: Optional[float] = None) -> None:
        timeout = float(timeout if timeout is not None else WORKER_SETTINGS.get("drain_timeout_seconds", 30.0))  # type: ignore[arg-type]
        for pool in self.pools.values():
            pool.stop(drain=False)
        for queue in self.queues.values():
            queue.shutdown()
        for pool in self.pools.values():
            pool.join(timeout)
        self.delivery.shutdown(wait=True)
        logger.info("Job system shut down", queues=list(self.queues))


__all__ = ["JobSystem"]
