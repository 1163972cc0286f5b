"""Query Service implementation.

This service is the entry point of the retrieval control layer. It admits the
request against the user's quota, embeds the query through the embedding
cache, runs the (optionally category-filtered) vector search and reports the
outcome together with the admission decision, so the caller can route the
generation step to the recommended backend tier.
"""
import logging
import math
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from document_chunking import ChunkingEngine, DocumentChunk
from retrieval_services.admission_service import AdmissionController, AdmissionDecision, BackendTier
from retrieval_services.embedding_cache_service import EmbeddingCache
from retrieval_services.embedding_service import EmbeddingService, build_embedding_provider
from retrieval_services.errors import EmbeddingComputeError, ProviderRateLimitedError, QuotaExceededError
from retrieval_services.fanout_runner import ConcurrentFanoutRunner
from retrieval_services.service_interfaces import (
    RequestProcessor,
    SearchResult,
    ServiceRequest,
    ServiceResponse,
)
from retrieval_services.vector_search_service import (
    QdrantSearchProvider,
    RetrievalOptimizer,
    VectorSearchRequest,
)

# Configure logging
logger = logging.getLogger(__name__)

NO_CONTEXT_MESSAGE = "No supporting context found for this query."
PROVIDER_EXHAUSTED_MESSAGE = "Provider capacity exhausted, please try a lighter-weight mode."


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token."""
    return math.ceil(len(text) / 4) if text else 0


class QueryRequest(ServiceRequest):
    """Query request model."""
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    query_text: str
    category: Optional[str] = None
    filters: Optional[Dict[str, Any]] = None
    limit: Optional[int] = None
    variants: List[str] = Field(default_factory=list)


class QueryResponse(ServiceResponse):
    """Query response model."""
    decision: Optional[AdmissionDecision] = None
    results: Optional[List[SearchResult]] = None
    variant_results: Optional[Dict[str, List[SearchResult]]] = None


class IngestRequest(ServiceRequest):
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    text: str


class IngestResponse(ServiceResponse):
    chunks: Optional[List[DocumentChunk]] = None


class RetrievalOutcome(BaseModel):
    """What a retrieval produced, and which tier the caller should generate with."""
    decision: AdmissionDecision
    results: List[SearchResult] = Field(default_factory=list)
    variant_results: Dict[str, List[SearchResult]] = Field(default_factory=dict)
    message: Optional[str] = None

    @property
    def denied(self) -> bool:
        return not self.decision.allowed


class RetrievalControlService(RequestProcessor):
    """Admission, embedding and search for one query at a time."""

    def __init__(
        self,
        admission: AdmissionController,
        embeddings: EmbeddingService,
        optimizer: RetrievalOptimizer,
        chunker: Optional[ChunkingEngine] = None,
        fanout: Optional[ConcurrentFanoutRunner] = None,
    ):
        """Initialize the query service.

        Args:
            admission: Per-user quota and tier decisions
            embeddings: Cache-first embedding boundary
            optimizer: Cached and retried vector search
            chunker: Chunking engine used for ingestion
            fanout: Runner for query expansions; defaults to the optimizer's
        """
        self.admission = admission
        self.embeddings = embeddings
        self.optimizer = optimizer
        self.chunker = chunker or ChunkingEngine()
        self.fanout = fanout or optimizer.fanout
        self.is_running = True
        logger.info("Query Service initialized")

    @classmethod
    def from_settings(cls, settings) -> "RetrievalControlService":
        """Wire every service from a ``Settings`` object."""
        fanout = ConcurrentFanoutRunner(settings.fanout)
        cache = EmbeddingCache(settings.embedding_cache)
        provider = build_embedding_provider(
            settings.embedding_provider,
            model=settings.embedding_model,
            openai_api_key=settings.openai_api_key,
            huggingface_api_key=settings.huggingface_api_key,
        )
        search_provider = QdrantSearchProvider(
            url=settings.qdrant_url,
            collection=settings.collection_name,
            api_key=settings.qdrant_api_key,
        )
        return cls(
            admission=AdmissionController(settings.admission),
            embeddings=EmbeddingService(provider, cache=cache),
            optimizer=RetrievalOptimizer(search_provider, settings.search, fanout=fanout),
            chunker=ChunkingEngine(settings.chunking),
            fanout=fanout,
        )

    async def _search(
        self,
        vector: List[float],
        category: Optional[str],
        filters: Optional[Dict[str, Any]],
        limit: Optional[int],
    ) -> List[SearchResult]:
        if category:
            return await self.optimizer.search_by_category(vector, category, limit)
        return await self.optimizer.filtered_search(vector, filters, limit)

    async def _embed_with_rotation(self, user_id: str, text: str) -> Optional[List[float]]:
        """Embed with the user's provider key, rotating keys on rate limits.

        Returns None once every key is exhausted and the user has been pinned
        to the fallback tier.
        """
        api_key = self.admission.get_provider_key(user_id)
        while True:
            try:
                return await self.embeddings.get_embedding(text, api_key=api_key)
            except ProviderRateLimitedError as e:
                outcome = self.admission.handle_provider_rate_limit(user_id)
                if outcome.action != "rotate_key":
                    logger.warning(f"Provider rate limited for user {user_id} with no keys left: {e}")
                    return None
                logger.info(f"Provider rate limited for user {user_id}, retrying with key {outcome.key_index + 1}")
                api_key = outcome.key

    def _fallback_outcome(self, decision: AdmissionDecision) -> RetrievalOutcome:
        return RetrievalOutcome(
            decision=decision.model_copy(update={"tier": BackendTier.FALLBACK}),
            message=PROVIDER_EXHAUSTED_MESSAGE,
        )

    async def retrieve(
        self,
        user_id: str,
        query_text: str,
        category: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> RetrievalOutcome:
        """Admit, embed and search one query.

        A denied request is an outcome, not an error. Search failures degrade
        to an empty result set. Provider rate limits rotate the user's key; with
        every key exhausted the outcome recommends the fallback tier.

        Raises:
            EmbeddingComputeError: if the query could not be embedded
        """
        try:
            with self.admission.admit(user_id) as ticket:
                vector = await self._embed_with_rotation(user_id, query_text)
                if vector is None:
                    return self._fallback_outcome(ticket.decision)
                results = await self._search(vector, category, filters, limit)
                ticket.record_tokens(
                    estimate_tokens(query_text) + sum(estimate_tokens(r.content) for r in results)
                )
        except QuotaExceededError as e:
            logger.warning(f"Request from user {user_id} denied: {e}")
            return RetrievalOutcome(decision=e.decision, message=e.decision.user_message)

        return RetrievalOutcome(
            decision=ticket.decision,
            results=results,
            message=None if results else NO_CONTEXT_MESSAGE,
        )

    async def retrieve_swarm(
        self,
        user_id: str,
        query_text: str,
        variants: Sequence[str],
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> RetrievalOutcome:
        """Search a query together with its reformulations.

        Variants that could not be embedded or searched map to an empty list.
        Only the base query rotates provider keys; variants reuse the key the
        base query settled on.
        """
        try:
            with self.admission.admit(user_id) as ticket:
                base_vector = await self._embed_with_rotation(user_id, query_text)
                if base_vector is None:
                    return self._fallback_outcome(ticket.decision)

                api_key = self.admission.get_provider_key(user_id)
                expanded = await self.fanout.expand_queries_with_embeddings(
                    list(variants), lambda q: self.embeddings.get_embedding(q, api_key=api_key)
                )
                searchable = [(text, vector) for text, vector in expanded if vector]
                swarm = await self.optimizer.swarm_search(
                    base_vector, [vector for _, vector in searchable], filters, limit
                )

                results = swarm.base_result or []
                variant_results = {text: [] for text in variants}
                for (text, _), found in zip(searchable, swarm.variant_results):
                    variant_results[text] = found or []

                ticket.record_tokens(
                    estimate_tokens(query_text) + sum(estimate_tokens(v) for v in variants)
                )
        except QuotaExceededError as e:
            logger.warning(f"Swarm request from user {user_id} denied: {e}")
            return RetrievalOutcome(decision=e.decision, message=e.decision.user_message)

        found_any = bool(results) or any(variant_results.values())
        return RetrievalOutcome(
            decision=ticket.decision,
            results=results,
            variant_results=variant_results,
            message=None if found_any else NO_CONTEXT_MESSAGE,
        )

    def ingest(self, document_id: str, text: str) -> List[DocumentChunk]:
        """Chunk a document for indexing."""
        chunks = self.chunker.chunk_document(text, document_id=document_id)
        logger.info(f"Document {document_id} split into {len(chunks)} chunks")
        return chunks

    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        if isinstance(request, IngestRequest):
            chunks = self.ingest(request.document_id, request.text)
            return IngestResponse(
                request_id=request.request_id,
                status="success",
                message=None if chunks else "Document contained no text",
                chunks=chunks,
            )

        if not isinstance(request, QueryRequest):
            return ServiceResponse(
                request_id=request.request_id,
                status="error",
                message="Invalid request type",
            )

        try:
            if request.variants:
                outcome = await self.retrieve_swarm(
                    request.user_id, request.query_text, request.variants, request.filters, request.limit
                )
            else:
                outcome = await self.retrieve(
                    request.user_id, request.query_text, request.category, request.filters, request.limit
                )
        except EmbeddingComputeError as e:
            logger.error(f"Error processing query: {str(e)}")
            return QueryResponse(
                request_id=request.request_id,
                status="error",
                message=f"Error processing query: {str(e)}",
            )

        return QueryResponse(
            request_id=request.request_id,
            status="denied" if outcome.denied else "success",
            message=outcome.message,
            decision=outcome.decision,
            results=outcome.results,
            variant_results=outcome.variant_results or None,
        )

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        services_status = {
            "admission": await self.admission.health_check(),
            "embeddings": await self.embeddings.health_check(),
            "vector_search": await self.optimizer.health_check(),
        }
        return {
            "status": "healthy" if all(s.get("status") == "healthy" for s in services_status.values()) else "degraded",
            "services": services_status,
            "version": "1.0.0",
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Query Service")
        self.is_running = False
        await self.embeddings.shutdown()
        await self.optimizer.shutdown()
        await self.admission.shutdown()


# FastAPI specific code
def create_fastapi_app(service: Optional[RetrievalControlService] = None):
    """Create a FastAPI app for the Query Service, with the admin endpoints under ``/admin``."""
    from fastapi import FastAPI, HTTPException

    from retrieval_services.admission_service import create_fastapi_app as create_admission_app

    if service is None:
        from retrieval_services.settings import load_settings
        service = RetrievalControlService.from_settings(load_settings(os.getenv("RETRIEVAL_ENV_FILE")))

    @asynccontextmanager
    async def lifespan(app):
        service.embeddings.cache.start()
        try:
            await service.optimizer.warmup()
        except Exception as e:
            logger.warning(f"Vector search warmup failed, continuing: {e}")
        yield
        await service.shutdown()

    app = FastAPI(title="Retrieval Control Service", version="1.0.0", lifespan=lifespan)
    app.state.service = service
    app.mount("/admin", create_admission_app(service.admission))

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return await service.health_check()

    @app.post("/query")
    async def query(request: QueryRequest):
        """Process a query request."""
        response = await service.process_request(request)
        if response.status == "denied":
            raise HTTPException(status_code=429, detail=response.message)
        if response.status == "error":
            raise HTTPException(status_code=502, detail=response.message)
        return response

    @app.post("/search")
    async def search(request: VectorSearchRequest):
        """Search with a precomputed query vector."""
        return await service.optimizer.process_request(request)

    @app.post("/ingest")
    async def ingest(request: IngestRequest):
        """Chunk a document for indexing."""
        return await service.process_request(request)

    return app
