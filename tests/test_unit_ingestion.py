from types import SimpleNamespace

from gifter_jobs.models.db import ProductMirror, ProductPublishStatus
from gifter_jobs.models.schemas.ingest import ProductChanged, ProductChangedEvent
from gifter_jobs.services.ingestion import (
    has_significant_product_change,
    ingest_product_changed,
    plan_product_jobs,
    should_process_product,
)


def _stored(**fields):
    base = {
        "title": "Wool Throw",
        "description": "Warm and soft",
        "short_description": None,
        "specs": None,
        "gift_tags": ["cozy"],
        "occasion_fit": ["birthday"],
        "style_tags": ["rustic"],
        "enrichment_version": 2,
    }
    base.update(fields)
    return SimpleNamespace(**base)


def _event(**fields) -> ProductChanged:
    body = {
        "title": "Wool Throw",
        "status": "PUBLISHED",
        "visibleToGifter": True,
        "description": "Warm and soft",
        "giftTags": ["cozy"],
        "occasionFit": ["birthday"],
        "styleTags": ["rustic"],
    }
    body.update(fields)
    return ProductChanged.model_validate(body)


def test_should_process_only_published_visible():
    assert should_process_product(_event()).should_embed is True
    draft = should_process_product(_event(status="draft"))
    assert draft.should_enrich is False and draft.should_embed is False
    assert "DRAFT" in draft.reason
    hidden = should_process_product(_event(visibleToGifter=False))
    assert hidden.should_embed is False
    # Visibility left unset counts as visible
    assert should_process_product({"status": ProductPublishStatus.PUBLISHED}).should_enrich is True


def test_significant_change_rules():
    assert has_significant_product_change(None, _event()) is True
    assert has_significant_product_change(_stored(), _event()) is False
    assert has_significant_product_change(_stored(), _event(title="Cashmere Throw")) is True
    assert has_significant_product_change(_stored(), _event(styleTags=["modern"])) is True
    # Omitted tag lists are not a change
    assert has_significant_product_change(_stored(), _event(giftTags=None, occasionFit=None, styleTags=None)) is False


def test_plan_passes_hash_only_when_unchanged():
    unchanged = plan_product_jobs(_event(), _stored(), existing_text_hash="abc")
    assert unchanged.enqueue_enrichment is True
    assert unchanged.enqueue_embedding is True
    assert unchanged.significant_change is False
    assert unchanged.previous_text_hash == "abc"
    assert unchanged.current_enrichment_version == 2

    changed = plan_product_jobs(_event(description="New copy"), _stored(), existing_text_hash="abc")
    assert changed.significant_change is True
    assert changed.previous_text_hash is None

    fresh = plan_product_jobs(_event(), None)
    assert fresh.current_enrichment_version is None

    skipped = plan_product_jobs(_event(status="ARCHIVED"), _stored())
    assert skipped.enqueue_enrichment is False and skipped.enqueue_embedding is False


def _webhook(**product_fields) -> ProductChangedEvent:
    product = {
        "title": "Wool Throw",
        "status": "PUBLISHED",
        "visibleToGifter": True,
        "defaultPrice": 4500,
        "defaultCurrency": "USD",
        "giftTags": ["cozy"],
    }
    product.update(product_fields)
    return ProductChangedEvent.model_validate({
        "event": "product.changed",
        "payloadProductId": "cms-prod-1",
        "brand": {"payloadBrandId": "cms-brand-1", "name": "Hearth & Co", "giftFit": "thoughtful"},
        "product": product,
    })


def test_ingest_mirrors_and_enqueues(db_session, job_system):
    result = ingest_product_changed(db_session, _webhook(), job_system)
    assert result.created is True
    assert result.enrichment_enqueued is True
    assert result.embedding_enqueued is True

    product = db_session.get(ProductMirror, result.product_id)
    assert product.brand.gift_style == "thoughtful"
    assert product.gift_tags == ["cozy"]
    assert job_system.queue("product-enrichment").find_active(f"product-enrichment-{product.id}") is not None
    assert job_system.queue("product-embedding").find_active(f"product-embedding-{product.id}") is not None

    # A second event while jobs are pending updates the mirror without duplicating jobs
    again = ingest_product_changed(db_session, _webhook(title="Wool Throw XL"), job_system)
    assert again.created is False
    assert again.product_id == result.product_id
    assert len(job_system.queue("product-embedding").records()) == 1


def test_ingest_keeps_enriched_tags_when_event_omits_them(db_session, job_system):
    first = ingest_product_changed(db_session, _webhook(), job_system)
    ingest_product_changed(db_session, _webhook(giftTags=None), job_system)
    db_session.expire_all()
    assert db_session.get(ProductMirror, first.product_id).gift_tags == ["cozy"]


def test_ingest_unpublished_product_enqueues_nothing(db_session, job_system):
    result = ingest_product_changed(db_session, _webhook(status="DRAFT"), job_system)
    assert result.enrichment_enqueued is False
    assert result.embedding_enqueued is False
    assert job_system.queue("product-enrichment").depth() == 0
    product = db_session.get(ProductMirror, result.product_id)
    assert product.status == ProductPublishStatus.DRAFT
