"""
Text generation / embedding collaborator backed by the OpenAI SDK.
Every provider call is recorded as a ModelRun row (tokens, latency, cost, status).
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import openai
from openai import OpenAI
from sqlalchemy.orm import Session

from gifter_jobs.config import LLM_SETTINGS
from gifter_jobs.models.db import LlmPurpose, ModelRun, ModelRunStatus
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.circuit_breaker import CircuitBreaker, GLOBAL_CIRCUIT_BREAKER

logger = get_logger(__name__)

BREAKER_KEY = "openai"
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class GenerationServiceError(Exception):
    """Provider call failed. ``retryable`` tells the job layer whether another attempt can help."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class GenerationParseError(Exception):
    """Provider returned content that is not the JSON we asked for."""


@dataclass(slots=True)
class Completion:
    content: str
    tokens_in: int
    tokens_out: int
    latency_ms: int
    run_id: Optional[str] = None


@dataclass(slots=True)
class Embeddings:
    vectors: list[list[float]]
    tokens_in: int
    latency_ms: int
    run_id: Optional[str] = None
    model: str = ""
    dims: int = 0


def calculate_cost(tokens_in: int, tokens_out: int) -> float:
    return (
        (tokens_in / 1000) * float(LLM_SETTINGS["input_cost_per_1k"])  # type: ignore[arg-type]
        + (tokens_out / 1000) * float(LLM_SETTINGS["output_cost_per_1k"])  # type: ignore[arg-type]
    )


def parse_json_response(content: str) -> Any:
    """Parse JSON from a model response, tolerating a markdown code fence around it."""
    match = _FENCE_RE.search(content or "")
    raw = match.group(1) if match else (content or "")
    try:
        return json.loads(raw.strip())
    except json.JSONDecodeError as e:
        logger.error("Failed to parse JSON from model response", content_preview=(content or "")[:200])
        raise GenerationParseError("Invalid JSON response from model") from e


def _classify(error: Exception) -> GenerationServiceError:
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return GenerationServiceError(f"{type(error).__name__}: {error}", retryable=True)
    if isinstance(error, openai.APIStatusError):
        # 4xx other than 429 will fail the same way on every attempt
        return GenerationServiceError(f"{type(error).__name__}: {error}", retryable=not (400 <= error.status_code < 500))
    return GenerationServiceError(f"{type(error).__name__}: {error}", retryable=True)


class GenerationService:
    """
    Synchronous OpenAI client wrapper used from worker threads.

    The SDK client is created lazily so the process can start (and tests can
    run) without credentials; the first real call without a key fails with a
    non-retryable error.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        client: Optional[OpenAI] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        embedding_dims: Optional[int] = None,
        breaker: CircuitBreaker = GLOBAL_CIRCUIT_BREAKER,
    ):
        self._session_factory = session_factory
        self._client = client
        self.provider = provider or str(LLM_SETTINGS["provider"])
        self.model = model or str(LLM_SETTINGS["model"])
        self.embedding_model = embedding_model or str(LLM_SETTINGS["embedding_model"])
        self.embedding_dims = int(embedding_dims or LLM_SETTINGS["embedding_dims"])  # type: ignore[arg-type]
        self._breaker = breaker

    @property
    def config(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "embedding_model": self.embedding_model,
            "embedding_dims": self.embedding_dims,
        }

    def _get_client(self) -> OpenAI:
        if self._client is None:
            api_key = LLM_SETTINGS.get("api_key")
            if not api_key:
                raise GenerationServiceError("LLM_API_KEY not configured", retryable=False)
            self._client = OpenAI(api_key=str(api_key), timeout=float(LLM_SETTINGS["timeout_seconds"]))  # type: ignore[arg-type]
            logger.info("OpenAI client initialized", model=self.model, embedding_model=self.embedding_model)
        return self._client

    def _guard(self) -> None:
        allowed, reason = self._breaker.allow_call(BREAKER_KEY)
        if not allowed:
            raise GenerationServiceError(f"Generation provider unavailable ({reason})", retryable=True)

    def _record_run(
        self,
        *,
        purpose: LlmPurpose,
        model: str,
        trace_id: Optional[str],
        tokens_in: int,
        tokens_out: int,
        latency_ms: int,
        status: ModelRunStatus,
        error: Optional[str] = None,
    ) -> Optional[str]:
        if self._session_factory is None:
            return None
        session = self._session_factory()
        try:
            run = ModelRun(
                provider=self.provider,
                model=model,
                purpose=purpose,
                trace_id=trace_id,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                latency_ms=latency_ms,
                cost_usd=calculate_cost(tokens_in, tokens_out),
                status=status,
                error=error,
            )
            session.add(run)
            session.commit()
            return run.id
        except Exception as e:  # ModelRun failures are logged, never raised
            session.rollback()
            logger.error("Failed to log model run", error=str(e), purpose=purpose.value)
            return None
        finally:
            session.close()

    def complete(
        self,
        messages: list[dict[str, str]],
        *,
        purpose: LlmPurpose,
        temperature: float = 0.7,
        response_format: Optional[str] = None,
        trace_id: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        self._guard()
        client = self._get_client()
        started = time.perf_counter()
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                temperature=temperature,
                max_tokens=int(max_tokens or LLM_SETTINGS["max_tokens"]),  # type: ignore[arg-type]
                response_format={"type": "json_object"} if response_format == "json_object" else openai.NOT_GIVEN,
            )
        except openai.OpenAIError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            self._breaker.record_failure(BREAKER_KEY)
            self._record_run(
                purpose=purpose, model=self.model, trace_id=trace_id, tokens_in=0, tokens_out=0,
                latency_ms=latency_ms, status=ModelRunStatus.ERROR, error=str(e),
            )
            logger.warning("Chat completion failed", purpose=purpose.value, trace_id=trace_id, error=str(e))
            raise _classify(e) from e

        self._breaker.record_success(BREAKER_KEY)
        latency_ms = int((time.perf_counter() - started) * 1000)
        content = (response.choices[0].message.content if response.choices else None) or ""
        tokens_in = response.usage.prompt_tokens if response.usage else 0
        tokens_out = response.usage.completion_tokens if response.usage else 0
        run_id = self._record_run(
            purpose=purpose, model=self.model, trace_id=trace_id, tokens_in=tokens_in, tokens_out=tokens_out,
            latency_ms=latency_ms, status=ModelRunStatus.SUCCESS,
        )
        logger.info(
            "Chat completion succeeded",
            purpose=purpose.value,
            trace_id=trace_id,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            latency_ms=latency_ms,
        )
        return Completion(content=content, tokens_in=tokens_in, tokens_out=tokens_out, latency_ms=latency_ms, run_id=run_id)

    def embed(self, texts: list[str], *, purpose: LlmPurpose, trace_id: Optional[str] = None) -> Embeddings:
        if not texts:
            return Embeddings(vectors=[], tokens_in=0, latency_ms=0, model=self.embedding_model, dims=self.embedding_dims)
        self._guard()
        client = self._get_client()
        started = time.perf_counter()
        try:
            response = client.embeddings.create(
                model=self.embedding_model,
                input=texts,
                dimensions=self.embedding_dims,
            )
        except openai.OpenAIError as e:
            latency_ms = int((time.perf_counter() - started) * 1000)
            self._breaker.record_failure(BREAKER_KEY)
            self._record_run(
                purpose=purpose, model=self.embedding_model, trace_id=trace_id, tokens_in=0, tokens_out=0,
                latency_ms=latency_ms, status=ModelRunStatus.ERROR, error=str(e),
            )
            logger.warning("Embedding failed", purpose=purpose.value, trace_id=trace_id, error=str(e))
            raise _classify(e) from e

        self._breaker.record_success(BREAKER_KEY)
        latency_ms = int((time.perf_counter() - started) * 1000)
        vectors = [list(item.embedding) for item in sorted(response.data, key=lambda d: d.index)]
        tokens_in = response.usage.prompt_tokens if response.usage else 0
        run_id = self._record_run(
            purpose=purpose, model=self.embedding_model, trace_id=trace_id, tokens_in=tokens_in, tokens_out=0,
            latency_ms=latency_ms, status=ModelRunStatus.SUCCESS,
        )
        logger.debug("Embedding generated", purpose=purpose.value, count=len(vectors), latency_ms=latency_ms)
        return Embeddings(
            vectors=vectors,
            tokens_in=tokens_in,
            latency_ms=latency_ms,
            run_id=run_id,
            model=self.embedding_model,
            dims=self.embedding_dims,
        )


__all__ = [
    "GenerationService",
    "GenerationServiceError",
    "GenerationParseError",
    "Completion",
    "Embeddings",
    "calculate_cost",
    "parse_json_response",
]
