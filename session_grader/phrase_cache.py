"""
Phrase cache for line ratings.

Maps a normalized utterance to the last rating and alternative phrasings
computed for it. Entries are advisory: every backend turns its own failures
into a miss (get) or a dropped write (put), so the rater never fails on
account of the cache.
"""

import os
import re
import json
import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from dotenv import load_dotenv
from google.cloud import storage
from google.cloud.exceptions import NotFound
import redis.asyncio as redis

from .schemas import CachedPhrase

load_dotenv()

logger = logging.getLogger(__name__)


def normalize_phrase(text: Optional[str]) -> str:
    """Case- and whitespace-insensitive cache key for an utterance"""
    if not text:
        return ""
    normalized = re.sub(r"\s+", " ", text.strip().lower())
    return normalized.rstrip(".!?,;: ")


def phrase_digest(normalized: str) -> str:
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class PhraseCache(ABC):
    """Swappable phrase cache interface"""

    def __init__(self, max_age_days: Optional[float] = None):
        self.max_age_days = max_age_days if max_age_days is not None else float(
            os.getenv("PHRASE_CACHE_MAX_AGE_DAYS", "30")
        )

    async def get(self, text: str) -> Optional[CachedPhrase]:
        key = normalize_phrase(text)
        if not key:
            return None
        try:
            entry = await self._read(key)
        except Exception as e:
            logger.warning(f"Phrase cache read failed, treating as miss: {e}")
            return None
        if entry is None or entry.is_stale(self.max_age_days):
            return None
        return entry

    async def put(self, text: str, rating: str, alternatives: List[str]) -> None:
        key = normalize_phrase(text)
        if not key:
            return
        entry = CachedPhrase(key=key, rating=rating, alternatives=list(alternatives)[:3])
        try:
            await self._write(entry)
        except Exception as e:
            logger.warning(f"Phrase cache write failed for '{key[:40]}': {e}")

    async def close(self) -> None:
        return None

    @abstractmethod
    async def _read(self, key: str) -> Optional[CachedPhrase]:
        ...

    @abstractmethod
    async def _write(self, entry: CachedPhrase) -> None:
        ...


class InMemoryPhraseCache(PhraseCache):
    """Process-local cache; last write wins"""

    def __init__(self, max_age_days: Optional[float] = None):
        super().__init__(max_age_days)
        self.entries: Dict[str, CachedPhrase] = {}

    async def _read(self, key: str) -> Optional[CachedPhrase]:
        return self.entries.get(key)

    async def _write(self, entry: CachedPhrase) -> None:
        self.entries[entry.key] = entry

    def __len__(self) -> int:
        return len(self.entries)


class GCSPhraseCache(PhraseCache):
    """Cloud Storage backed cache: one JSON object per phrase"""

    def __init__(self, bucket_name: Optional[str] = None, prefix: str = "phrase-cache/",
                 max_age_days: Optional[float] = None, client: Optional[storage.Client] = None):
        """
        Initialize GCS phrase cache

        Args:
            bucket_name: Cloud Storage bucket name (defaults to env var)
            prefix: Object prefix for cache entries
            max_age_days: Entries older than this are treated as misses
            client: Pre-built storage client
        """
        super().__init__(max_age_days)
        self.client = client or storage.Client()
        self.bucket_name = bucket_name or os.getenv("GCS_BUCKET_NAME", "session-grader-cache")
        self.bucket = self.client.bucket(self.bucket_name)
        self.prefix = prefix

    def create_cache_key(self, key: str) -> str:
        return f"{self.prefix}{phrase_digest(key)}.json"

    def _download(self, key: str) -> Optional[CachedPhrase]:
        blob = self.bucket.blob(self.create_cache_key(key))
        try:
            content = blob.download_as_text(encoding="utf-8")
        except NotFound:
            return None
        return CachedPhrase.model_validate(json.loads(content))

    def _upload(self, entry: CachedPhrase) -> str:
        path = self.create_cache_key(entry.key)
        blob = self.bucket.blob(path)
        blob.upload_from_string(
            json.dumps(entry.model_dump(mode="json"), indent=2),
            content_type="application/json"
        )
        return f"gs://{self.bucket_name}/{path}"

    async def _read(self, key: str) -> Optional[CachedPhrase]:
        return await asyncio.to_thread(self._download, key)

    async def _write(self, entry: CachedPhrase) -> None:
        await asyncio.to_thread(self._upload, entry)


class RedisPhraseCache(PhraseCache):
    """Redis backed cache; staleness enforced by key TTL as well as cached_at"""

    def __init__(self, redis_url: Optional[str] = None, max_age_days: Optional[float] = None,
                 client: Optional[redis.Redis] = None):
        super().__init__(max_age_days)
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.redis = client or redis.from_url(self.redis_url)

    def _redis_key(self, key: str) -> str:
        return f"phrase:{phrase_digest(key)}"

    async def _read(self, key: str) -> Optional[CachedPhrase]:
        raw = await self.redis.get(self._redis_key(key))
        if raw is None:
            return None
        return CachedPhrase.model_validate_json(raw)

    async def _write(self, entry: CachedPhrase) -> None:
        ttl = max(1, int(self.max_age_days * 86400))
        await self.redis.set(self._redis_key(entry.key), entry.model_dump_json(), ex=ttl)

    async def close(self) -> None:
        await self.redis.aclose()


def create_phrase_cache(backend: Optional[str] = None) -> PhraseCache:
    """Build the phrase cache selected by PHRASE_CACHE_BACKEND (memory, gcs, redis)"""
    backend = (backend or os.getenv("PHRASE_CACHE_BACKEND", "memory")).lower()
    if backend == "gcs":
        return GCSPhraseCache()
    if backend == "redis":
        return RedisPhraseCache()
    if backend != "memory":
        logger.warning(f"Unknown phrase cache backend '{backend}', using in-memory cache")
    return InMemoryPhraseCache()
