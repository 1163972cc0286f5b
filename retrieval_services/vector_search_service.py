"""Vector Search Service implementation.

This service wraps a single logical vector search against the external
vector-search provider with a result cache, retry with exponential backoff,
similarity-threshold filtering and category-based metadata filters. A search
that keeps failing degrades to an empty result set rather than an error.
"""
import asyncio
import json
import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.models import FieldCondition, Filter, MatchAny, MatchValue
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from retrieval_services.errors import SearchProviderError
from retrieval_services.fanout_runner import ConcurrentFanoutRunner, SwarmResult
from retrieval_services.service_interfaces import (
    RequestProcessor,
    SearchResult,
    ServiceRequest,
    ServiceResponse,
    VectorSearchProvider,
)

# Configure logging
logger = logging.getLogger(__name__)

CATEGORY_FIELD = "category"

# Domain categories and the document categories each one may draw from
CATEGORY_FILTERS: Dict[str, List[str]] = {
    "contract": ["Contract Law", "General Law"],
    "agreement": ["Contract Law", "General Law"],
    "constitutional": ["Constitutional Law", "General Law"],
    "rights": ["Constitutional Law", "General Law"],
    "criminal": ["Criminal Law", "General Law"],
    "employment": ["Employment Law", "Labor Law", "General Law"],
    "labor": ["Employment Law", "Labor Law", "General Law"],
}


class SearchConfig(BaseModel):
    """Vector search tuning."""
    top_k: int = 8
    similarity_threshold: float = 0.68
    filter_enabled: bool = True
    max_retries: int = 3
    timeout: float = 15.0
    backoff_multiplier: float = 1.0
    cache_max_size: int = 1000
    cache_key_dims: int = 10
    warmup_timeout: float = 5.0


class VectorSearchRequest(ServiceRequest):
    """Vector search request model."""
    query_vector: List[float]
    filters: Optional[Dict[str, Any]] = None
    limit: Optional[int] = None
    category: Optional[str] = None


class VectorSearchResponse(ServiceResponse):
    """Vector search response model."""
    results: Optional[List[SearchResult]] = None


def get_category_filters(category: str) -> Dict[str, Any]:
    """Map a domain category to metadata filters; unknown categories map to no filter."""
    allowed = CATEGORY_FILTERS.get(category.strip().lower())
    if not allowed:
        return {}
    return {CATEGORY_FIELD: list(allowed)}


def matches_filters(metadata: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """Scalar filter values must match exactly; list values match any member."""
    for key, expected in (filters or {}).items():
        value = metadata.get(key)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class InMemorySearchProvider(VectorSearchProvider):
    """Cosine-similarity search over points held in memory, for development and tests."""

    def __init__(self, documents: Optional[Sequence[Dict[str, Any]]] = None):
        self.documents: List[Dict[str, Any]] = []
        for doc in documents or []:
            self.add(doc["id"], doc["vector"], doc.get("content", ""), doc.get("metadata"))

    def add(
        self,
        doc_id: str,
        vector: Sequence[float],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.documents.append({
            "id": doc_id,
            "vector": np.asarray(vector, dtype=float),
            "content": content,
            "metadata": dict(metadata or {}),
        })

    async def find(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        query_np = np.asarray(query_vector, dtype=float)
        query_norm = np.linalg.norm(query_np)

        results = []
        for doc in self.documents:
            if not matches_filters(doc["metadata"], filters):
                continue
            if doc["vector"].shape != query_np.shape:
                continue
            denom = query_norm * np.linalg.norm(doc["vector"])
            similarity = float(np.dot(query_np, doc["vector"]) / denom) if denom else 0.0
            results.append(SearchResult(
                id=doc["id"],
                content=doc["content"],
                metadata=doc["metadata"],
                similarity=similarity,
            ))

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    async def ping(self) -> None:
        return None


class QdrantSearchProvider(VectorSearchProvider):
    """Vector search against a Qdrant collection."""

    def __init__(
        self,
        url: str,
        collection: str,
        api_key: Optional[str] = None,
        client: Optional[AsyncQdrantClient] = None,
        content_field: str = "content",
    ):
        self.collection = collection
        self.content_field = content_field
        self.client = client or AsyncQdrantClient(url=url, api_key=api_key)
        logger.info(f"Qdrant search provider initialized for collection {collection} at {url}")

    @staticmethod
    def build_filter(filters: Optional[Dict[str, Any]]) -> Optional[Filter]:
        if not filters:
            return None
        conditions = []
        for key, value in filters.items():
            if isinstance(value, (list, tuple, set)):
                conditions.append(FieldCondition(key=key, match=MatchAny(any=list(value))))
            else:
                conditions.append(FieldCondition(key=key, match=MatchValue(value=value)))
        return Filter(must=conditions)

    async def find(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        try:
            response = await self.client.query_points(
                collection_name=self.collection,
                query=list(query_vector),
                query_filter=self.build_filter(filters),
                limit=limit,
                with_payload=True,
            )
        except Exception as e:
            raise SearchProviderError(f"Qdrant search failed: {e}") from e

        results = []
        for point in getattr(response, "points", []):
            payload = dict(point.payload or {})
            content = payload.pop(self.content_field, None) or payload.pop("chunk_text", "")
            results.append(SearchResult(
                id=str(point.id),
                content=content,
                metadata=payload,
                similarity=float(point.score or 0.0),
            ))
        return results

    async def ping(self) -> None:
        await self.client.get_collection(self.collection)

    async def close(self) -> None:
        await self.client.close()


class RetrievalOptimizer(RequestProcessor):
    """Cached, retried and similarity-filtered vector search."""

    def __init__(
        self,
        provider: VectorSearchProvider,
        config: Optional[SearchConfig] = None,
        fanout: Optional[ConcurrentFanoutRunner] = None,
    ):
        """Initialize the retrieval optimizer.

        Args:
            provider: External vector-search provider
            config: Search tuning; defaults mirror production settings
            fanout: Runner used for bulk and swarm searches
        """
        self.provider = provider
        self.config = config or SearchConfig()
        self.fanout = fanout or ConcurrentFanoutRunner()
        self._cache: "OrderedDict[str, List[SearchResult]]" = OrderedDict()
        self._lock = threading.RLock()
        self.is_running = True

        logger.info(
            f"Retrieval optimizer initialized (top_k={self.config.top_k}, "
            f"threshold={self.config.similarity_threshold}, retries={self.config.max_retries})"
        )

    def _cache_key(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]],
        limit: int,
    ) -> str:
        vector_key = ",".join(repr(float(x)) for x in list(query_vector)[: self.config.cache_key_dims])
        filter_key = json.dumps(filters, sort_keys=True, default=str) if filters else ""
        return f"{vector_key}_{filter_key}_{limit}"

    def _store(self, key: str, results: List[SearchResult]) -> None:
        with self._lock:
            if key in self._cache:
                self._cache[key] = results
                return
            while len(self._cache) >= self.config.cache_max_size > 0:
                self._cache.popitem(last=False)
            if self.config.cache_max_size > 0:
                self._cache[key] = results

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear_cache(self) -> None:
        """Clear the query cache."""
        with self._lock:
            self._cache.clear()

    async def _perform_search(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]],
        limit: int,
    ) -> List[SearchResult]:
        try:
            results = await asyncio.wait_for(
                self.provider.find(query_vector, filters, limit), self.config.timeout
            )
        except asyncio.TimeoutError as e:
            raise SearchProviderError(f"Vector search timed out after {self.config.timeout}s") from e

        threshold = self.config.similarity_threshold
        if threshold > 0:
            results = [r for r in results if r.similarity >= threshold]
        return list(results)

    async def _search_with_retries(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]],
        limit: int,
    ) -> List[SearchResult]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=self.config.backoff_multiplier, exp_base=2, min=0),
            before_sleep=lambda retry_state: logger.warning(
                f"Search attempt {retry_state.attempt_number} failed: "
                f"{retry_state.outcome.exception()}, retrying in {retry_state.next_action.sleep:.1f}s"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._perform_search(query_vector, filters, limit)
        return []

    async def search(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Perform a cached vector search.

        Args:
            query_vector: The query embedding
            filters: Optional metadata filters
            limit: Result limit (defaults to ``top_k``)

        Returns:
            Results with similarity at or above the threshold, in provider
            order; empty if every attempt failed
        """
        effective_limit = limit or self.config.top_k
        cache_key = self._cache_key(query_vector, filters, effective_limit)

        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            logger.debug("Cache hit for vector search")
            return [r.model_copy(deep=True) for r in cached]

        try:
            results = await self._search_with_retries(query_vector, filters, effective_limit)
        except Exception as e:
            logger.error(f"Vector search failed after {self.config.max_retries} attempts: {e}")
            return []

        self._store(cache_key, results)
        return [r.model_copy(deep=True) for r in results]

    async def filtered_search(
        self,
        query_vector: Sequence[float],
        metadata_filters: Optional[Dict[str, Any]],
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Search with metadata constraints, unless filtering is disabled."""
        if not self.config.filter_enabled:
            return await self.search(query_vector, None, limit)
        return await self.search(query_vector, metadata_filters or None, limit)

    async def search_by_category(
        self,
        query_vector: Sequence[float],
        category: str,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Search restricted to the document categories relevant to ``category``."""
        return await self.filtered_search(query_vector, get_category_filters(category), limit)

    async def bulk_search(
        self,
        query_vectors: Sequence[Sequence[float]],
        per_op_timeout: Optional[float] = None,
    ) -> List[List[SearchResult]]:
        """Run independent searches concurrently; a failed slot yields no results."""
        operations = [lambda v=v: self.search(v) for v in query_vectors]
        results = await self.fanout.run_all(operations, per_op_timeout, label="bulk search")
        return [r if r is not None else [] for r in results]

    async def swarm_search(
        self,
        base_vector: Sequence[float],
        variant_vectors: Sequence[Sequence[float]],
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> SwarmResult:
        """Search the base query and its variants as one swarm."""
        variants = [lambda v=v: self.search(v, filters, limit) for v in variant_vectors]
        return await self.fanout.run_swarm(lambda: self.search(base_vector, filters, limit), variants)

    async def warmup(self) -> None:
        """Pre-warm the provider connection with a lightweight request."""
        try:
            await asyncio.wait_for(self.provider.ping(), self.config.warmup_timeout)
        except Exception as e:
            logger.error(f"Error warming up vector search provider: {e}")
            raise
        logger.info("Vector search provider warmed up successfully")

    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        if not isinstance(request, VectorSearchRequest):
            return ServiceResponse(
                request_id=getattr(request, "request_id", "unknown"),
                status="error",
                message="Invalid request type",
            )

        if request.category:
            results = await self.search_by_category(request.query_vector, request.category, request.limit)
        else:
            results = await self.filtered_search(request.query_vector, request.filters, request.limit)

        return VectorSearchResponse(
            request_id=request.request_id,
            status="success",
            message=None if results else "No supporting context found",
            results=results,
        )

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        status = {
            "status": "healthy",
            "provider": type(self.provider).__name__,
            "cache_size": self.cache_size,
            "cache_max_size": self.config.cache_max_size,
        }
        try:
            await asyncio.wait_for(self.provider.ping(), self.config.warmup_timeout)
            status["provider_status"] = "connected"
        except Exception as e:
            status["provider_status"] = f"error: {str(e)}"
            status["status"] = "degraded"
        return status

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down vector search service")
        self.is_running = False
        self.clear_cache()
        await self.provider.close()
