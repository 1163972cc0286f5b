"""Embedding Service implementation.

This service is the embedding boundary of the control layer: it consults the
EmbeddingCache, falls back to the remote embedding provider on a miss, and
stores what it computed. Without a query vector no search is possible, so
provider failures surface as ``EmbeddingComputeError``; there is no silent
fallback vector. A rate-limited credential surfaces as
``ProviderRateLimitedError`` so the caller can rotate keys.
"""
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import openai
from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_incrementing

from retrieval_services.embedding_cache_service import EmbeddingCache
from retrieval_services.errors import EmbeddingComputeError, ProviderRateLimitedError
from retrieval_services.service_interfaces import EmbeddingProvider, ServiceInterface

# Configure logging
logger = logging.getLogger(__name__)

HF_ROUTER_URL = "https://router.huggingface.co/hf-inference/models/{model}"


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        client: Optional[Any] = None,
    ):
        self.model = model
        self.client = client if client is not None else openai.AsyncOpenAI(api_key=api_key)

    async def embed(self, texts: Sequence[str], api_key: Optional[str] = None) -> List[List[float]]:
        client = self.client.with_options(api_key=api_key) if api_key else self.client
        try:
            response = await client.embeddings.create(model=self.model, input=list(texts))
        except openai.RateLimitError as e:
            raise ProviderRateLimitedError(f"OpenAI embedding rate limited: {e}", key=api_key) from e
        return [list(item.embedding) for item in response.data]

    async def close(self) -> None:
        await self.client.close()


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the Hugging Face inference router.

    E5 models expect a ``query:`` or ``passage:`` prefix; texts without one get
    ``default_prefix``.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "intfloat/multilingual-e5-large",
        default_prefix: str = "query: ",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.default_prefix = default_prefix
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _prefixed(self, text: str) -> str:
        trimmed = text.strip()
        if trimmed.startswith("query:") or trimmed.startswith("passage:"):
            return trimmed
        return f"{self.default_prefix}{trimmed}"

    @staticmethod
    def _normalize(result: Any, expected: int) -> List[List[float]]:
        # The router answers with [v1, v2, ...] for one input and [[...], [...]] for a batch
        if not isinstance(result, list) or not result:
            raise EmbeddingComputeError(f"Unexpected embedding response: {str(result)[:200]}")
        if isinstance(result[0], (int, float)):
            return [[float(x) for x in result]]
        if expected == 1 and isinstance(result[0], list) and result[0] and isinstance(result[0][0], list):
            result = result[0]
        return [[float(x) for x in vector] for vector in result]

    async def embed(self, texts: Sequence[str], api_key: Optional[str] = None) -> List[List[float]]:
        inputs = [self._prefixed(t) for t in texts]
        logger.info(f"Sending embedding request to Hugging Face for {self.model} (batch size: {len(inputs)})")

        response = await self.client.post(
            HF_ROUTER_URL.format(model=self.model),
            headers={
                "Authorization": f"Bearer {api_key or self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "inputs": inputs if len(inputs) > 1 else inputs[0],
                "options": {"wait_for_model": True},
            },
        )

        if response.status_code == 429:
            raise ProviderRateLimitedError(f"Hugging Face rate limited: {response.text}", key=api_key)
        if response.status_code != 200:
            raise EmbeddingComputeError(f"Hugging Face error {response.status_code}: {response.text}")

        return self._normalize(response.json(), len(inputs))

    async def close(self) -> None:
        await self.client.aclose()


def build_embedding_provider(
    provider: str,
    model: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    huggingface_api_key: Optional[str] = None,
) -> EmbeddingProvider:
    """Create the embedding provider named in configuration."""
    name = provider.lower()
    if name == "openai":
        return OpenAIEmbeddingProvider(api_key=openai_api_key, model=model or "text-embedding-3-small")
    if name in ("huggingface", "hf"):
        if not huggingface_api_key:
            raise ValueError("HUGGINGFACE_API_KEY is required for the huggingface embedding provider")
        return HuggingFaceEmbeddingProvider(
            api_key=huggingface_api_key,
            model=model or "intfloat/multilingual-e5-large",
        )
    raise ValueError(f"Unknown embedding provider: {provider}")


class EmbeddingService(ServiceInterface):
    """Cache-first embedding computation."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[EmbeddingCache] = None,
        max_attempts: int = 2,
        retry_delay: float = 0.3,
    ):
        """Initialize the embedding service.

        Args:
            provider: Remote embedding provider
            cache: Embedding cache to consult; a private one is created if omitted
            max_attempts: Provider attempts before giving up
            retry_delay: Base delay in seconds, grows linearly per attempt;
                rate-limit errors are never retried here
        """
        self.provider = provider
        self.cache = cache if cache is not None else EmbeddingCache()
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    async def _embed_with_retry(self, texts: List[str], api_key: Optional[str] = None) -> List[List[float]]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_not_exception_type(ProviderRateLimitedError),
            before_sleep=lambda retry_state: logger.warning(
                f"Embedding attempt {retry_state.attempt_number}/{self.max_attempts} failed: "
                f"{retry_state.outcome.exception()}"
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    vectors = await self.provider.embed(texts, api_key=api_key)
                    if len(vectors) != len(texts):
                        raise EmbeddingComputeError(
                            f"Provider returned {len(vectors)} embeddings for {len(texts)} texts"
                        )
                    if any(not v for v in vectors):
                        raise EmbeddingComputeError("Empty embedding received")
                    return vectors
        except ProviderRateLimitedError:
            # Key rotation is the caller's decision
            raise
        except Exception as e:
            raise EmbeddingComputeError(
                f"Embedding failed after {self.max_attempts} attempts: {e}"
            ) from e
        raise EmbeddingComputeError("Embedding produced no result")

    async def get_embedding(self, text: str, api_key: Optional[str] = None) -> List[float]:
        """Return the embedding for ``text``, computing it on a cache miss.

        Raises:
            EmbeddingComputeError: if the text is empty or the provider fails
            ProviderRateLimitedError: if the credential in use is rate limited
        """
        text_to_embed = text.strip()
        if not text_to_embed:
            raise EmbeddingComputeError("Cannot embed empty text")

        cached = self.cache.get(text_to_embed)
        if cached is not None:
            logger.debug("Cache hit for embedding")
            return cached

        start_time = time.time()
        vector = (await self._embed_with_retry([text_to_embed], api_key))[0]
        self.cache.put(text_to_embed, vector)
        logger.info(f"Embedding generated in {time.time() - start_time:.2f}s")
        return vector

    async def get_embeddings(
        self, texts: Sequence[str], api_key: Optional[str] = None
    ) -> List[List[float]]:
        """Batch variant: cached texts are served locally, misses fetched in one call."""
        if not texts:
            return []

        results: List[Optional[List[float]]] = []
        missing_indices: List[int] = []
        missing_texts: List[str] = []

        for idx, text in enumerate(texts):
            stripped = text.strip()
            if not stripped:
                raise EmbeddingComputeError(f"Cannot embed empty text at position {idx}")
            cached = self.cache.get(stripped)
            results.append(cached)
            if cached is None:
                missing_indices.append(idx)
                missing_texts.append(stripped)

        if not missing_texts:
            logger.debug(f"Cache hit for all {len(texts)} batch items")
            return results  # type: ignore[return-value]

        fetched = await self._embed_with_retry(missing_texts, api_key)
        for idx, text, vector in zip(missing_indices, missing_texts, fetched):
            results[idx] = vector
            self.cache.put(text, vector)

        return results  # type: ignore[return-value]

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        return {
            "status": "healthy",
            "provider": type(self.provider).__name__,
            "cache": await self.cache.health_check(),
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down embedding service")
        await self.cache.shutdown()
        await self.provider.close()
