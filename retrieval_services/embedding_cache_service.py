"""Embedding Cache Service implementation.

This service memoizes text -> embedding vector computations in memory so that
repeated queries and re-ingested passages do not hit the embedding provider
again. Entries expire after a TTL, capacity is bounded with least-recently-
accessed eviction, and a background task sweeps expired entries even when
there is no insert traffic.
"""
import asyncio
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel

from retrieval_services.service_interfaces import ServiceInterface

# Configure logging
logger = logging.getLogger(__name__)


class EmbeddingCacheConfig(BaseModel):
    """Embedding cache limits."""
    max_size: int = 1000
    ttl: float = 2 * 24 * 60 * 60  # 2 days
    cleanup_interval: float = 60 * 60  # 1 hour
    # Kept for configuration compatibility; lookups are exact trimmed-text matches.
    similarity_threshold: float = 0.95
    sweep_ratio: float = 0.8


@dataclass
class CachedEmbedding:
    """A cached vector and its access bookkeeping."""

    source_text: str
    vector: List[float]
    created_at: float
    last_accessed_at: float
    access_count: int = 0


class CacheStats(BaseModel):
    size: int
    max_size: int
    hits: int
    misses: int
    hit_rate: float
    total_accesses: int


class EmbeddingCache(ServiceInterface):
    """In-memory TTL + LRU cache of embedding vectors keyed by trimmed text."""

    def __init__(
        self,
        config: Optional[EmbeddingCacheConfig] = None,
        clock: Callable[[], float] = time.time,
        autostart: bool = True,
    ):
        """Initialize the embedding cache.

        Args:
            config: Cache limits
            clock: Time source in seconds, injectable for tests
            autostart: Start the background sweep now if an event loop is running
        """
        self.config = config or EmbeddingCacheConfig()
        self.clock = clock
        self._entries: Dict[str, CachedEmbedding] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

        self.is_running = True
        self._cleanup_task: Optional[asyncio.Task] = None

        if autostart:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop, background sweep deferred until start()")
            else:
                self.start()

        logger.info(
            f"Embedding cache initialized (max_size={self.config.max_size}, ttl={self.config.ttl}s)"
        )

    @staticmethod
    def _key(text: str) -> str:
        return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()

    def _is_expired(self, entry: CachedEmbedding, now: float) -> bool:
        return now - entry.created_at >= self.config.ttl

    def get_entry(self, text: str) -> Optional[CachedEmbedding]:
        """Return the cached entry for ``text``, or None on a miss."""
        key = self._key(text)
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.source_text.strip() != text.strip():
                self._misses += 1
                return None

            if self._is_expired(entry, now):
                del self._entries[key]
                self._misses += 1
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._hits += 1
            return entry

    def get(self, text: str) -> Optional[List[float]]:
        """Get the cached vector for ``text``.

        Args:
            text: Source text; surrounding whitespace is ignored

        Returns:
            The vector, or None if absent or expired
        """
        entry = self.get_entry(text)
        return list(entry.vector) if entry is not None else None

    def put(self, text: str, vector: Sequence[float]) -> None:
        """Store the vector computed for ``text``."""
        key = self._key(text)
        now = self.clock()
        with self._lock:
            if key not in self._entries:
                if len(self._entries) >= self.config.max_size * self.config.sweep_ratio:
                    self._purge_expired_locked(now)
                if len(self._entries) >= self.config.max_size:
                    self._evict_least_recently_used()

            self._entries[key] = CachedEmbedding(
                source_text=text,
                vector=[float(v) for v in vector],
                created_at=now,
                last_accessed_at=now,
            )

    def _evict_least_recently_used(self) -> None:
        # Caller holds self._lock
        if not self._entries:
            return
        lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        del self._entries[lru_key]
        logger.debug("Evicted least recently used embedding")

    def _purge_expired_locked(self, now: float) -> int:
        expired_keys = [k for k, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired_keys:
            del self._entries[key]
        return len(expired_keys)

    def purge_expired(self) -> int:
        """Remove expired entries and return how many were removed."""
        with self._lock:
            removed = self._purge_expired_locked(self.clock())
        if removed:
            logger.info(f"Cleaned up {removed} expired embeddings")
        return removed

    def clear(self) -> None:
        """Clear the entire cache."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            return CacheStats(
                size=len(self._entries),
                max_size=self.config.max_size,
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
                total_accesses=sum(e.access_count for e in self._entries.values()),
            )

    def start(self) -> None:
        """Start the background sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self.is_running = True
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self):
        """Background task to periodically clean up expired embeddings."""
        while self.is_running:
            await asyncio.sleep(self.config.cleanup_interval)
            self.purge_expired()

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        stats = self.get_stats()
        return {
            "status": "healthy",
            "backend": "memory",
            "sweeper_running": self._cleanup_task is not None and not self._cleanup_task.done(),
            **stats.model_dump(),
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down embedding cache")
        self.is_running = False
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "EmbeddingCache":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
