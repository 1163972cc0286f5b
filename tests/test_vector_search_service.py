"""Tests for the cached, retried vector search and its providers."""

import asyncio
import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
from qdrant_client.http.models import MatchAny, MatchValue

from retrieval_services.errors import SearchProviderError
from retrieval_services.service_interfaces import SearchResult, VectorSearchProvider
from retrieval_services.vector_search_service import (
    InMemorySearchProvider,
    QdrantSearchProvider,
    RetrievalOptimizer,
    SearchConfig,
    VectorSearchRequest,
    get_category_filters,
    matches_filters,
)


class ScriptedProvider(VectorSearchProvider):
    """Returns canned results, optionally failing the first ``failures`` calls."""

    def __init__(self, results=None, failures=0, delay=0.0):
        self.results = results or []
        self.failures = failures
        self.delay = delay
        self.calls = []

    async def find(self, query_vector, filters=None, limit=10):
        self.calls.append((list(query_vector), filters, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise SearchProviderError("provider unavailable")
        return list(self.results)[:limit]


def result(doc_id, similarity, **metadata):
    return SearchResult(id=doc_id, content=f"content of {doc_id}", metadata=metadata, similarity=similarity)


def make_optimizer(provider, **overrides):
    overrides.setdefault("backoff_multiplier", 0)
    return RetrievalOptimizer(provider, SearchConfig(**overrides))


def test_results_below_threshold_are_dropped():
    provider = ScriptedProvider([result("a", 0.9), result("b", 0.68), result("c", 0.5)])
    optimizer = make_optimizer(provider)

    results = asyncio.run(optimizer.search([0.1, 0.2]))

    assert [r.id for r in results] == ["a", "b"]


def test_zero_threshold_keeps_everything():
    provider = ScriptedProvider([result("a", 0.9), result("c", 0.1)])
    optimizer = make_optimizer(provider, similarity_threshold=0)

    assert len(asyncio.run(optimizer.search([0.1]))) == 2


def test_default_limit_is_top_k():
    provider = ScriptedProvider()
    optimizer = make_optimizer(provider)

    asyncio.run(optimizer.search([0.1]))

    assert provider.calls[0][2] == 8


def test_repeated_search_is_served_from_cache():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)

    first = asyncio.run(optimizer.search([0.1, 0.2], {"category": "Contract Law"}, 5))
    second = asyncio.run(optimizer.search([0.1, 0.2], {"category": "Contract Law"}, 5))

    assert first == second
    assert len(provider.calls) == 1
    assert optimizer.cache_size == 1


def test_cached_results_are_isolated_from_caller_mutation():
    provider = ScriptedProvider([result("a", 0.9, category="Contract Law")])
    optimizer = make_optimizer(provider)

    first = asyncio.run(optimizer.search([0.1, 0.2]))
    first[0].metadata["category"] = "Tampered"
    second = asyncio.run(optimizer.search([0.1, 0.2]))
    second[0].metadata["category"] = "Tampered again"
    third = asyncio.run(optimizer.search([0.1, 0.2]))

    assert third[0].metadata == {"category": "Contract Law"}
    assert len(provider.calls) == 1


def test_different_filters_or_limits_are_separate_cache_entries():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)

    asyncio.run(optimizer.search([0.1], {"category": "Contract Law"}, 5))
    asyncio.run(optimizer.search([0.1], {"category": "Criminal Law"}, 5))
    asyncio.run(optimizer.search([0.1], {"category": "Contract Law"}, 6))

    assert len(provider.calls) == 3


def test_empty_results_are_cached():
    provider = ScriptedProvider([])
    optimizer = make_optimizer(provider)

    asyncio.run(optimizer.search([0.1]))
    asyncio.run(optimizer.search([0.1]))

    assert len(provider.calls) == 1


def test_transient_failures_are_retried():
    provider = ScriptedProvider([result("a", 0.9)], failures=2)
    optimizer = make_optimizer(provider)

    results = asyncio.run(optimizer.search([0.1]))

    assert [r.id for r in results] == ["a"]
    assert len(provider.calls) == 3


def test_exhausted_retries_degrade_to_empty_and_are_not_cached():
    provider = ScriptedProvider([result("a", 0.9)], failures=3)
    optimizer = make_optimizer(provider)

    assert asyncio.run(optimizer.search([0.1])) == []
    assert len(provider.calls) == 3
    assert optimizer.cache_size == 0

    # Provider recovered: the failure was not memoized
    assert [r.id for r in asyncio.run(optimizer.search([0.1]))] == ["a"]


def test_slow_provider_times_out_and_degrades():
    provider = ScriptedProvider([result("a", 0.9)], delay=1.0)
    optimizer = make_optimizer(provider, timeout=0.02, max_retries=2)

    assert asyncio.run(optimizer.search([0.1])) == []
    assert len(provider.calls) == 2


def test_cache_evicts_oldest_entry_at_capacity():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider, cache_max_size=2)

    for vector in ([0.1], [0.2], [0.3]):
        asyncio.run(optimizer.search(vector))
    asyncio.run(optimizer.search([0.1]))

    assert optimizer.cache_size == 2
    assert len(provider.calls) == 4


def test_clear_cache():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)
    asyncio.run(optimizer.search([0.1]))

    optimizer.clear_cache()
    asyncio.run(optimizer.search([0.1]))

    assert len(provider.calls) == 2


def test_category_search_uses_category_filters():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)

    asyncio.run(optimizer.search_by_category([0.1], "Contract"))

    assert provider.calls[0][1] == {"category": ["Contract Law", "General Law"]}


def test_unknown_category_searches_unfiltered():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)

    asyncio.run(optimizer.search_by_category([0.1], "maritime"))

    assert provider.calls[0][1] is None


def test_filters_ignored_when_filtering_disabled():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider, filter_enabled=False)

    asyncio.run(optimizer.filtered_search([0.1], {"category": "Criminal Law"}))

    assert provider.calls[0][1] is None


def test_category_filter_mapping():
    assert get_category_filters("employment") == {
        "category": ["Employment Law", "Labor Law", "General Law"]
    }
    assert get_category_filters("rights") == {"category": ["Constitutional Law", "General Law"]}
    assert get_category_filters("unknown") == {}


def test_matches_filters():
    metadata = {"category": "Contract Law", "year": 2020}

    assert matches_filters(metadata, None)
    assert matches_filters(metadata, {"category": ["Contract Law", "General Law"]})
    assert matches_filters(metadata, {"year": 2020})
    assert not matches_filters(metadata, {"category": "Criminal Law"})


def test_bulk_search_returns_one_list_per_query():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)

    results = asyncio.run(optimizer.bulk_search([[0.1], [0.2], [0.3]]))

    assert [[r.id for r in batch] for batch in results] == [["a"], ["a"], ["a"]]


def test_swarm_search_returns_base_and_variants():
    provider = ScriptedProvider([result("a", 0.9)])
    optimizer = make_optimizer(provider)

    swarm = asyncio.run(optimizer.swarm_search([0.1], [[0.2], [0.3]]))

    assert [r.id for r in swarm.base_result] == ["a"]
    assert len(swarm.variant_results) == 2


def test_process_request_reports_missing_context():
    optimizer = make_optimizer(ScriptedProvider([]))

    response = asyncio.run(optimizer.process_request(VectorSearchRequest(request_id="r1", query_vector=[0.1])))

    assert response.status == "success"
    assert response.results == []
    assert response.message == "No supporting context found"


def test_warmup_propagates_provider_errors():
    provider = ScriptedProvider()
    provider.ping = AsyncMock(side_effect=SearchProviderError("unreachable"))
    optimizer = make_optimizer(provider)

    with pytest.raises(SearchProviderError):
        asyncio.run(optimizer.warmup())
    assert asyncio.run(optimizer.health_check())["status"] == "degraded"


class TestInMemoryProvider:
    def _provider(self):
        return InMemorySearchProvider([
            {"id": "contract-1", "vector": [1.0, 0.0], "content": "offer", "metadata": {"category": "Contract Law"}},
            {"id": "crime-1", "vector": [0.9, 0.1], "content": "mens rea", "metadata": {"category": "Criminal Law"}},
            {"id": "general-1", "vector": [0.0, 1.0], "content": "statute", "metadata": {"category": "General Law"}},
            {"id": "odd-shape", "vector": [1.0, 0.0, 0.0], "content": "skip", "metadata": {}},
        ])

    def test_orders_by_cosine_similarity(self):
        results = asyncio.run(self._provider().find([1.0, 0.0], limit=3))

        assert [r.id for r in results] == ["contract-1", "crime-1", "general-1"]
        assert results[0].similarity == pytest.approx(1.0)

    def test_applies_list_filters(self):
        results = asyncio.run(self._provider().find([1.0, 0.0], {"category": ["Contract Law", "General Law"]}))

        assert [r.id for r in results] == ["contract-1", "general-1"]


class TestQdrantProvider:
    def test_build_filter(self):
        query_filter = QdrantSearchProvider.build_filter({"category": ["Contract Law", "General Law"], "year": 2020})

        assert isinstance(query_filter.must[0].match, MatchAny)
        assert query_filter.must[0].match.any == ["Contract Law", "General Law"]
        assert isinstance(query_filter.must[1].match, MatchValue)
        assert QdrantSearchProvider.build_filter(None) is None

    def test_find_maps_points_to_results(self):
        client = MagicMock()
        client.query_points = AsyncMock(return_value=SimpleNamespace(points=[
            SimpleNamespace(id=7, score=0.83, payload={"chunk_text": "clause text", "category": "Contract Law"}),
        ]))
        provider = QdrantSearchProvider(url="http://localhost:6333", collection="cases", client=client)

        results = asyncio.run(provider.find([0.1, 0.2], {"category": "Contract Law"}, 4))

        assert results == [SearchResult(id="7", content="clause text", metadata={"category": "Contract Law"}, similarity=0.83)]
        kwargs = client.query_points.await_args.kwargs
        assert kwargs["collection_name"] == "cases"
        assert kwargs["limit"] == 4

    def test_find_wraps_client_errors(self):
        client = MagicMock()
        client.query_points = AsyncMock(side_effect=ConnectionError("refused"))
        provider = QdrantSearchProvider(url="http://localhost:6333", collection="cases", client=client)

        with pytest.raises(SearchProviderError):
            asyncio.run(provider.find([0.1]))
