"""Core application configuration & tunable governance rules.

Everything that may need tuning without touching service logic (queue
defaults, retry/backoff ladders, worker concurrency, scheduler cadences,
clustering and curation thresholds, external collaborator settings) lives
here as module constants. Values can be overridden through environment
variables; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, object] = {
	"use_redis": _env_bool("QUEUE_USE_REDIS", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_prefix": os.getenv("QUEUE_REDIS_PREFIX", "gifter:jobs"),
	"redis_health_check_timeout": 2.0,
	# Seconds a reserved job stays invisible before it is redelivered.
	"lease_seconds": float(os.getenv("QUEUE_LEASE_SECONDS", "300")),
	"priorities": {  # Lower number = higher priority
		"critical": 1,
		"high": 2,
		"normal": 3,
		"low": 4,
	},
	"warn_depth": 1000,
	"max_in_memory": 5000,
}

# Queue names are part of the idempotency-key contract; do not rename.
PRODUCT_EMBEDDING_QUEUE = "product-embedding"
PRODUCT_ENRICHMENT_QUEUE = "product-enrichment"
TASTE_PROFILE_EMBEDDING_QUEUE = "taste-profile-embedding"
CURATED_COLLECTIONS_QUEUE = "curated-collections"
REMINDER_DISPATCH_QUEUE = "reminder-dispatch"

# ------------------------------- Retention -------------------------------- #
RETENTION_POLICY: dict[str, dict[str, int | None]] = {
	"completed": {"count": 1000, "age_seconds": 24 * 3600},
	"failed": {"count": 5000, "age_seconds": None},
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float | str] = {
	"type": "exponential",
	"base_seconds": 2,
	"factor": 2,          # Exponential factor
	"max_seconds": 600,
	"max_attempts": 3,
	"jitter_pct": 0.0,
}

# Per-queue delivery defaults. Callers may override any of them per enqueue.
QUEUE_DEFAULTS: dict[str, dict[str, int | float | str]] = {
	PRODUCT_EMBEDDING_QUEUE: {"priority": 2, "max_attempts": 3, "backoff_type": "exponential", "backoff_delay": 2.0},
	PRODUCT_ENRICHMENT_QUEUE: {"priority": 3, "max_attempts": 3, "backoff_type": "exponential", "backoff_delay": 2.0},
	TASTE_PROFILE_EMBEDDING_QUEUE: {"priority": 1, "max_attempts": 3, "backoff_type": "exponential", "backoff_delay": 2.0},
	# Up to five generation calls plus cover lookups per run; lease is also renewed by the worker heartbeat.
	CURATED_COLLECTIONS_QUEUE: {"priority": 4, "max_attempts": 5, "backoff_type": "exponential", "backoff_delay": 2.0, "lease_seconds": 900},
	REMINDER_DISPATCH_QUEUE: {"priority": 1, "max_attempts": 5, "backoff_type": "exponential", "backoff_delay": 5.0},
}

# --------------------------------- Workers -------------------------------- #
WORKER_SETTINGS: dict[str, object] = {
	"poll_timeout": 5.0,
	# Lease renewals per lease period while a handler runs.
	"heartbeats_per_lease": 3,
	"concurrency": {
		# One at a time for generation work to stay under provider rate limits.
		CURATED_COLLECTIONS_QUEUE: 1,
		PRODUCT_EMBEDDING_QUEUE: 5,
		PRODUCT_ENRICHMENT_QUEUE: 3,
		TASTE_PROFILE_EMBEDDING_QUEUE: 5,
		REMINDER_DISPATCH_QUEUE: 10,
	},
	"drain_timeout_seconds": 30.0,
	"delivery_threads": 4,
}

# -------------------------------- Scheduler ------------------------------- #
SCHEDULER_SETTINGS: dict[str, object] = {
	"enabled": _env_bool("SCHEDULER_ENABLED", True),
	"daily_collections_cadence": os.getenv("SCHEDULE_DAILY_COLLECTIONS", "daily@06:00"),
	"collection_cleanup_cadence": os.getenv("SCHEDULE_COLLECTION_CLEANUP", "daily@02:00"),
	"reminder_poll_cadence": os.getenv("SCHEDULE_REMINDER_POLL", "every:60"),
	"surfaces": ["home", "discovery", "occasion"],
	"reminder_batch_size": 100,
}

# -------------------------------- Clustering ------------------------------ #
CLUSTERING_SETTINGS: dict[str, float | int] = {
	"max_iterations": 20,
	"convergence_tolerance": 0.001,  # cosine distance
	"min_cluster_size": 10,
	"coherence_weight": 0.7,
	"adequacy_weight": 0.3,
	"undersized_adequacy": 0.5,
}

# -------------------------------- Curation -------------------------------- #
CURATION_SETTINGS: dict[str, int | float] = {
	"pool_size_limit": 1000,
	"min_pool_size": 50,
	"items_per_cluster": 30,   # k = pool_size // items_per_cluster
	"max_clusters": 20,
	"min_clusters": 2,
	"default_collections_count": 5,
	"default_products_per_collection": 8,
	"validity_days": 3,
	"temperature": 0.7,
}

# ------------------------------ Generation (LLM) -------------------------- #
LLM_SETTINGS: dict[str, object] = {
	"provider": os.getenv("LLM_PROVIDER", "openai"),
	"api_key": os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or None,
	"model": os.getenv("LLM_MODEL", "gpt-4o-mini"),
	"embedding_model": os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
	"embedding_dims": int(os.getenv("EMBEDDING_DIMS", "1536")),
	"timeout_seconds": float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
	"max_tokens": 2000,
	# USD per 1k tokens, used for ModelRun telemetry only.
	"input_cost_per_1k": 0.01,
	"output_cost_per_1k": 0.03,
}

# ------------------------------- Image search ----------------------------- #
IMAGE_SEARCH_SETTINGS: dict[str, object] = {
	"unsplash_access_key": os.getenv("UNSPLASH_ACCESS_KEY") or None,
	"api_base_url": os.getenv("UNSPLASH_API_URL", "https://api.unsplash.com"),
	"timeout_seconds": 10.0,
	"cache_ttl_seconds": 7 * 24 * 3600,
	"orientation": "portrait",
}

# ---------------------------- Internal webhooks --------------------------- #
# Shared secret the CMS sends in X-Internal-Webhook-Secret. Empty disables the check.
INTERNAL_WEBHOOK_SECRET: str = os.getenv("INTERNAL_WEBHOOK_SECRET", "")

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

__all__ = [
	"QUEUE_SETTINGS",
	"PRODUCT_EMBEDDING_QUEUE",
	"PRODUCT_ENRICHMENT_QUEUE",
	"TASTE_PROFILE_EMBEDDING_QUEUE",
	"CURATED_COLLECTIONS_QUEUE",
	"REMINDER_DISPATCH_QUEUE",
	"RETENTION_POLICY",
	"BACKOFF_POLICY",
	"QUEUE_DEFAULTS",
	"WORKER_SETTINGS",
	"SCHEDULER_SETTINGS",
	"CLUSTERING_SETTINGS",
	"CURATION_SETTINGS",
	"LLM_SETTINGS",
	"IMAGE_SEARCH_SETTINGS",
	"INTERNAL_WEBHOOK_SECRET",
	"CIRCUIT_BREAKER",
]
