"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise string relationship targets might not resolve.
"""
import json
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from gifter_jobs.database import Base, build_engine
from gifter_jobs.models.db import (  # noqa: F401  (registers every mapper)
    Brand,
    ProductMirror,
    ProductEmbedding,
    TasteProfile,
    CuratedCollection,
    CuratedCollectionItem,
    NotificationSchedule,
    Notification,
    ModelRun,
    ProductPublishStatus,
    NotificationChannel,
    NotificationStatus,
)
from gifter_jobs.config import QUEUE_DEFAULTS
from gifter_jobs.jobs.models import QueueDefaults
from gifter_jobs.jobs.queue import TaskQueue
from gifter_jobs.jobs.system import JobSystem
from gifter_jobs.services.generation import Completion, Embeddings, GenerationServiceError
from gifter_jobs.services.image_search import CoverImage, placeholder_image
from gifter_jobs.services.notifications import BackgroundDelivery
from gifter_jobs.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER

_PRODUCT_ID_RE = re.compile(r'"id": "([^"]+)"')


class FakeClock:
    """Epoch-seconds clock the tests move by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGeneration:
    """Records calls and answers from scripted responders instead of the provider."""

    def __init__(self):
        self.provider = "openai"
        self.model = "gpt-test"
        self.embedding_model = "embed-test"
        self.embedding_dims = 4
        self.complete_calls: list[dict[str, Any]] = []
        self.embed_calls: list[list[str]] = []
        self.responder: Callable[[list[dict[str, str]]], str] = collection_responder()
        self.vectorizer: Callable[[str], list[float]] = lambda text: [1.0, 0.0, 0.0, float(len(text) % 7)]
        self.complete_error: Optional[Exception] = None
        self.embed_error: Optional[Exception] = None

    @property
    def config(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "embedding_model": self.embedding_model,
            "embedding_dims": self.embedding_dims,
        }

    def complete(self, messages, *, purpose, temperature=0.7, response_format=None, trace_id=None, max_tokens=None) -> Completion:
        self.complete_calls.append(
            {"messages": messages, "purpose": purpose, "temperature": temperature, "response_format": response_format}
        )
        if self.complete_error is not None:
            raise self.complete_error
        return Completion(content=self.responder(messages), tokens_in=10, tokens_out=20, latency_ms=1, run_id=None)

    def embed(self, texts, *, purpose, trace_id=None) -> Embeddings:
        self.embed_calls.append(list(texts))
        if self.embed_error is not None:
            raise self.embed_error
        return Embeddings(
            vectors=[self.vectorizer(t) for t in texts],
            tokens_in=5,
            latency_ms=1,
            model=self.embedding_model,
            dims=self.embedding_dims,
        )


def collection_responder(max_items: int = 8, vibe: str = "cozy") -> Callable[[list[dict[str, str]]], str]:
    """Answers a cluster prompt with one collection built from the listed product ids."""
    counter = {"n": 0}

    def _respond(messages: list[dict[str, str]]) -> str:
        counter["n"] += 1
        ids = _PRODUCT_ID_RE.findall(messages[-1]["content"])
        return json.dumps({
            "collections": [
                {
                    "key": f"cluster-story-{counter['n']}",
                    "title": f"Cluster Story {counter['n']}",
                    "subtitle": "Small things, big feelings",
                    "description": "Gifts that feel like a warm evening in.",
                    "filters": {"productIds": ids[:max_items], "maxItems": max_items},
                    "editorial_vibe": vibe,
                }
            ]
        })

    return _respond


class FakeImageSearch:
    def __init__(self):
        self.vibes: list[str] = []

    def cover_for_vibe(self, vibe: str) -> CoverImage:
        self.vibes.append(vibe)
        return placeholder_image(vibe or "gift")


class StubRng:
    """Stands in for ``numpy.random.Generator`` so centroid seeding is fixed."""

    def __init__(self, indices: list[int]):
        self.indices = indices

    def choice(self, n, size, replace=False):
        return list(self.indices[:size])


@pytest.fixture(autouse=True)
def _isolate_circuit_breaker():
    """Reset the process-wide circuit breaker so failures do not spill across tests."""
    GLOBAL_CIRCUIT_BREAKER.reset()
    yield
    GLOBAL_CIRCUIT_BREAKER.reset()


@pytest.fixture()
def engine(tmp_path):
    # File-based SQLite so worker/delivery threads and the test thread share one database.
    eng = build_engine(f"sqlite+pysqlite:///{tmp_path / 'test_jobs.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_generation():
    return FakeGeneration()


@pytest.fixture()
def fake_images():
    return FakeImageSearch()


def memory_queue(name: str) -> TaskQueue:
    return TaskQueue(name, defaults=QueueDefaults.from_config(QUEUE_DEFAULTS.get(name)))  # type: ignore[arg-type]


@pytest.fixture()
def job_system(session_factory, fake_generation, fake_images):
    system = JobSystem(
        session_factory,
        generation=fake_generation,  # type: ignore[arg-type]
        images=fake_images,  # type: ignore[arg-type]
        delivery=BackgroundDelivery(session_factory, max_workers=1),
        queue_factory=memory_queue,
    )
    yield system
    system.shutdown(timeout=1.0)


@pytest.fixture()
def client(job_system, session_factory, monkeypatch):
    from gifter_jobs import main
    from gifter_jobs.api import deps

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(main, "SessionLocal", session_factory)
    main.app.dependency_overrides[deps.get_db] = _override_get_db
    main.app.state.job_system = job_system
    main.app.state.scheduler = None
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main.app.state.job_system = None


# ---------- Data factory helpers ----------

@pytest.fixture()
def brand_factory(db_session):
    def _create(name: str = "Hearth & Co", **fields) -> Brand:
        brand = Brand(payload_brand_id=f"brand-{secrets.token_hex(4)}", name=name, **fields)
        db_session.add(brand)
        db_session.commit()
        return brand
    return _create


@pytest.fixture()
def product_factory(db_session, brand_factory):
    default_brand: dict[str, Brand] = {}

    def _create(title: str = "Wool Throw", *, brand: Brand | None = None, commit: bool = True, **fields) -> ProductMirror:
        if brand is None:
            if "brand" not in default_brand:
                default_brand["brand"] = brand_factory()
            brand = default_brand["brand"]
        fields.setdefault("status", ProductPublishStatus.PUBLISHED)
        fields.setdefault("visible_to_gifter", True)
        fields.setdefault("default_price", 4500)
        fields.setdefault("default_currency", "USD")
        product = ProductMirror(
            payload_product_id=f"prod-{secrets.token_hex(6)}",
            brand_id=brand.id,
            title=title,
            **fields,
        )
        db_session.add(product)
        if commit:
            db_session.commit()
        return product
    return _create


@pytest.fixture()
def embedding_factory(db_session):
    def _create(product: ProductMirror, vector: list[float], *, model: str = "embed-test", text_hash: str = "seed") -> ProductEmbedding:
        row = ProductEmbedding(
            product_id=product.id,
            provider="openai",
            model=model,
            dims=len(vector),
            vector=vector,
            text_hash=text_hash,
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _create


@pytest.fixture()
def schedule_factory(db_session):
    def _create(*, minutes_ago: int = 2, status: NotificationStatus = NotificationStatus.QUEUED, **fields) -> NotificationSchedule:
        schedule = NotificationSchedule(
            user_id=fields.pop("user_id", f"user-{secrets.token_hex(3)}"),
            channel=fields.pop("channel", NotificationChannel.PUSH),
            status=status,
            scheduled_for=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
            payload=fields.pop("payload", {"title": "Mum's birthday is in 7 days", "body": "Time to pick a gift", "data": {"occasion": "birthday"}}),
            **fields,
        )
        db_session.add(schedule)
        db_session.commit()
        return schedule
    return _create


def retryable_error(message: str = "provider timeout") -> GenerationServiceError:
    return GenerationServiceError(message, retryable=True)
