"""
Cover image lookup for generated collections (Unsplash search API).

Vibe tags map to search queries; results are cached in-process with a TTL.
Without an access key, on API failure, or with the circuit open, callers of
:func:`cover_for_vibe` get a deterministic placeholder instead.
"""
import asyncio
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import aiohttp

from gifter_jobs.config import IMAGE_SEARCH_SETTINGS
from gifter_jobs.utils import get_logger
from gifter_jobs.utils.circuit_breaker import CircuitBreaker, GLOBAL_CIRCUIT_BREAKER

logger = get_logger(__name__)

BREAKER_KEY = "unsplash"

VIBE_QUERIES: Dict[str, str] = {
    "minimalist": "minimalist elegant design",
    "cozy": "cozy warm home interior",
    "luxurious": "luxury elegant lifestyle",
    "high-tech": "modern technology sleek",
    "playful": "playful colorful fun",
    "sophisticated": "sophisticated elegant style",
    "rustic": "rustic natural organic",
    "modern": "modern contemporary clean",
    "vintage": "vintage retro classic",
    "bohemian": "bohemian eclectic artistic",
}

PLACEHOLDER_COLORS = ["2C3E50", "34495E", "7F8C8D", "95A5A6", "BDC3C7"]


@dataclass(slots=True, frozen=True)
class CoverImage:
    url: str
    attribution: Optional[str] = None
    photo_id: Optional[str] = None
    download_location: Optional[str] = None
    is_placeholder: bool = False


def query_for_vibe(vibe: str) -> str:
    key = (vibe or "").strip().lower()
    return VIBE_QUERIES.get(key, key or "gift")


def placeholder_image(theme: str) -> CoverImage:
    """Deterministic placeholder: color picked from the character-code sum of ``theme``."""
    theme = theme or "gift"
    code_sum = sum(ord(ch) for ch in theme)
    color = PLACEHOLDER_COLORS[code_sum % len(PLACEHOLDER_COLORS)]
    return CoverImage(
        url=f"https://via.placeholder.com/400x600/{color}/FFFFFF?text={quote(theme, safe='')}",
        attribution=None,
        photo_id=f"placeholder-{code_sum}",
        is_placeholder=True,
    )


class ImageSearchService:
    def __init__(
        self,
        *,
        access_key: Optional[str] = None,
        api_base_url: Optional[str] = None,
        cache_ttl_seconds: Optional[float] = None,
        breaker: CircuitBreaker = GLOBAL_CIRCUIT_BREAKER,
    ):
        self.access_key = access_key if access_key is not None else IMAGE_SEARCH_SETTINGS.get("unsplash_access_key")
        self.api_base_url = str(api_base_url or IMAGE_SEARCH_SETTINGS["api_base_url"]).rstrip("/")
        self.cache_ttl_seconds = float(cache_ttl_seconds if cache_ttl_seconds is not None else IMAGE_SEARCH_SETTINGS["cache_ttl_seconds"])  # type: ignore[arg-type]
        self._cache: Dict[str, Tuple[float, CoverImage]] = {}
        self._cache_lock = threading.Lock()
        self._breaker = breaker

    @property
    def configured(self) -> bool:
        return bool(self.access_key)

    def _cache_get(self, key: str) -> Optional[CoverImage]:
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, image = entry
            if expires_at <= time.monotonic():
                del self._cache[key]
                return None
            return image

    def _cache_put(self, key: str, image: CoverImage) -> None:
        with self._cache_lock:
            self._cache[key] = (time.monotonic() + self.cache_ttl_seconds, image)

    async def _search(self, query: str, orientation: str) -> Optional[CoverImage]:
        timeout = aiohttp.ClientTimeout(total=float(IMAGE_SEARCH_SETTINGS["timeout_seconds"]))  # type: ignore[arg-type]
        headers = {
            "Authorization": f"Client-ID {self.access_key}",
            "Accept-Version": "v1",
        }
        params = {"query": query, "orientation": orientation, "per_page": "10", "order_by": "relevant"}
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(f"{self.api_base_url}/search/photos", headers=headers, params=params) as response:
                if response.status != 200:
                    raise ValueError(f"Unsplash API returned status {response.status}")
                data: Dict[str, Any] = await response.json()
            results = data.get("results") or []
            if not results:
                return None
            # Variety across collections sharing a vibe
            photo = results[random.randrange(min(5, len(results)))]
            image = CoverImage(
                url=photo["urls"]["regular"],
                attribution=f"Photo by {photo['user']['name']} on Unsplash",
                photo_id=photo.get("id"),
                download_location=(photo.get("links") or {}).get("download_location"),
            )
            if image.download_location:
                # Download tracking is required by the Unsplash API guidelines.
                async with session.get(image.download_location, headers=headers) as tracked:
                    if tracked.status != 200:
                        logger.debug("Unsplash download tracking failed", status_code=tracked.status)
            return image

    def search_photos(self, query: str, orientation: Optional[str] = None) -> Optional[CoverImage]:
        """Blocking search; returns None when unconfigured, unavailable or nothing matched."""
        orientation = orientation or str(IMAGE_SEARCH_SETTINGS.get("orientation", "portrait"))
        cache_key = f"{query}-{orientation}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached
        if not self.configured:
            logger.debug("Unsplash access key not configured", query=query)
            return None
        allowed, reason = self._breaker.allow_call(BREAKER_KEY)
        if not allowed:
            logger.warning("Unsplash circuit open, skipping search", query=query, reason=reason)
            return None
        try:
            image = asyncio.run(self._search(query, orientation))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
            self._breaker.record_failure(BREAKER_KEY)
            logger.error("Unsplash search failed", query=query, error=str(e))
            return None
        self._breaker.record_success(BREAKER_KEY)
        if image is None:
            logger.warning("No Unsplash photos found", query=query)
            return None
        self._cache_put(cache_key, image)
        return image

    def search_by_vibe(self, vibe: str) -> Optional[CoverImage]:
        return self.search_photos(query_for_vibe(vibe))

    def cover_for_vibe(self, vibe: str) -> CoverImage:
        return self.search_by_vibe(vibe) or placeholder_image(vibe or "gift")


__all__ = [
    "CoverImage",
    "ImageSearchService",
    "VIBE_QUERIES",
    "placeholder_image",
    "query_for_vibe",
]
