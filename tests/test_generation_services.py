"""Generation (OpenAI) and cover image services with their network edges mocked."""
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from gifter_jobs.models.db import LlmPurpose, ModelRun, ModelRunStatus
from gifter_jobs.services.generation import (
    GenerationParseError,
    GenerationService,
    GenerationServiceError,
    calculate_cost,
    parse_json_response,
)
from gifter_jobs.services.image_search import CoverImage, ImageSearchService, placeholder_image, query_for_vibe
from gifter_jobs.utils.circuit_breaker import CircuitBreaker

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _chat_response(content: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=500),
    )


def _service(session_factory, client, **kwargs) -> GenerationService:
    return GenerationService(session_factory, client=client, model="gpt-test", embedding_model="embed-test", embedding_dims=3, **kwargs)


def test_parse_json_response_tolerates_fences():
    assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_response('{"b": [1, 2]}') == {"b": [1, 2]}
    with pytest.raises(GenerationParseError):
        parse_json_response("not json at all")


def test_complete_records_model_run(session_factory, db_session):
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response('{"collections": []}')
    service = _service(session_factory, client)

    completion = service.complete(
        [{"role": "user", "content": "hi"}],
        purpose=LlmPurpose.CURATED_COLLECTIONS,
        response_format="json_object",
        trace_id="trace-9",
    )
    assert completion.content == '{"collections": []}'
    assert completion.tokens_in == 1000
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["response_format"] == {"type": "json_object"}

    run = db_session.get(ModelRun, completion.run_id)
    assert run.status == ModelRunStatus.SUCCESS
    assert run.trace_id == "trace-9"
    assert run.cost_usd == pytest.approx(calculate_cost(1000, 500))
    assert calculate_cost(1000, 500) == pytest.approx(0.01 + 0.015)


def test_embed_orders_vectors_by_index(session_factory):
    client = MagicMock()
    client.embeddings.create.return_value = SimpleNamespace(
        data=[SimpleNamespace(index=1, embedding=[0.0, 1.0, 0.0]), SimpleNamespace(index=0, embedding=[1.0, 0.0, 0.0])],
        usage=SimpleNamespace(prompt_tokens=8),
    )
    service = _service(session_factory, client)
    result = service.embed(["a", "b"], purpose=LlmPurpose.PRODUCT_EMBEDDING)
    assert result.vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
    assert client.embeddings.create.call_args.kwargs["dimensions"] == 3
    assert service.embed([], purpose=LlmPurpose.PRODUCT_EMBEDDING).vectors == []


def test_provider_errors_are_classified(session_factory, db_session):
    client = MagicMock()
    client.chat.completions.create.side_effect = openai.APIConnectionError(request=_REQUEST)
    service = _service(session_factory, client)
    with pytest.raises(GenerationServiceError) as exc:
        service.complete([{"role": "user", "content": "hi"}], purpose=LlmPurpose.PRODUCT_ENRICHMENT)
    assert exc.value.retryable is True
    failed = db_session.query(ModelRun).filter(ModelRun.status == ModelRunStatus.ERROR).count()
    assert failed == 1

    client.chat.completions.create.side_effect = openai.BadRequestError(
        "bad request", response=httpx.Response(400, request=_REQUEST), body=None
    )
    with pytest.raises(GenerationServiceError) as exc:
        service.complete([{"role": "user", "content": "hi"}], purpose=LlmPurpose.PRODUCT_ENRICHMENT)
    assert exc.value.retryable is False


def test_open_circuit_short_circuits_calls(session_factory):
    client = MagicMock()
    client.embeddings.create.side_effect = openai.APITimeoutError(request=_REQUEST)
    service = _service(session_factory, client, breaker=CircuitBreaker(failure_threshold=1, cooldown_seconds=300))
    with pytest.raises(GenerationServiceError):
        service.embed(["a"], purpose=LlmPurpose.PRODUCT_EMBEDDING)
    with pytest.raises(GenerationServiceError) as exc:
        service.embed(["a"], purpose=LlmPurpose.PRODUCT_EMBEDDING)
    assert "circuit_open" in str(exc.value)
    assert client.embeddings.create.call_count == 1


def test_missing_api_key_is_not_retryable(monkeypatch):
    from gifter_jobs.config import LLM_SETTINGS

    monkeypatch.setitem(LLM_SETTINGS, "api_key", None)
    service = GenerationService()
    with pytest.raises(GenerationServiceError) as exc:
        service.complete([{"role": "user", "content": "hi"}], purpose=LlmPurpose.PRODUCT_ENRICHMENT)
    assert exc.value.retryable is False


# ---------- cover images ----------

def test_placeholder_is_deterministic():
    first = placeholder_image("cozy")
    assert first == placeholder_image("cozy")
    assert first.is_placeholder is True
    assert "text=cozy" in first.url
    assert query_for_vibe("Cozy") == "cozy warm home interior"
    assert query_for_vibe("unknown-vibe") == "unknown-vibe"


def test_unconfigured_search_falls_back_to_placeholder():
    service = ImageSearchService(access_key="")
    cover = service.cover_for_vibe("rustic")
    assert cover.is_placeholder is True


def test_search_results_are_cached(monkeypatch):
    service = ImageSearchService(access_key="test-key")
    calls = []

    async def fake_search(query, orientation):
        calls.append((query, orientation))
        return CoverImage(url="https://images.example/cozy.jpg", attribution="Photo by A on Unsplash", photo_id="abc")

    monkeypatch.setattr(service, "_search", fake_search)
    first = service.cover_for_vibe("cozy")
    second = service.cover_for_vibe("cozy")
    assert first.photo_id == "abc"
    assert second == first
    assert calls == [("cozy warm home interior", "portrait")]


def test_search_failure_uses_placeholder_and_trips_breaker(monkeypatch):
    breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=300)
    service = ImageSearchService(access_key="test-key", breaker=breaker)

    async def failing_search(query, orientation):
        raise ValueError("Unsplash API returned status 503")

    monkeypatch.setattr(service, "_search", failing_search)
    assert service.cover_for_vibe("modern").is_placeholder is True
    assert breaker.allow_call("unsplash") == (False, "circuit_open")
