"""Environment-driven configuration for the retrieval control layer.

Every service takes a pydantic config object; this module builds them from
environment variables, optionally loading a ``.env`` file first. Variables
already present in the environment win over the file.
"""
import logging
import os
from typing import List, Optional

import dotenv
from pydantic import BaseModel, Field

from document_chunking import ChunkingConfig
from retrieval_services.admission_service import AdmissionConfig
from retrieval_services.embedding_cache_service import EmbeddingCacheConfig
from retrieval_services.fanout_runner import FanoutConfig
from retrieval_services.vector_search_service import SearchConfig

# Configure logging
logger = logging.getLogger(__name__)


class Settings(BaseModel):
    """All control-layer configuration in one place."""
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding_cache: EmbeddingCacheConfig = Field(default_factory=EmbeddingCacheConfig)
    fanout: FanoutConfig = Field(default_factory=FanoutConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)

    embedding_provider: str = "openai"
    embedding_model: Optional[str] = None
    openai_api_key: Optional[str] = None
    huggingface_api_key: Optional[str] = None

    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None
    collection_name: str = "rag_data"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _provider_keys() -> List[str]:
    """Comma-separated PROVIDER_API_KEYS, or the numbered PROVIDER_API_KEY variables."""
    combined = os.environ.get("PROVIDER_API_KEYS")
    if combined:
        return [k.strip() for k in combined.split(",") if k.strip()]
    names = ("PROVIDER_API_KEY", "PROVIDER_API_KEY_2", "PROVIDER_API_KEY_3")
    return [os.environ[n].strip() for n in names if os.environ.get(n, "").strip()]


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build settings from the environment.

    Args:
        env_file: Optional path to a ``.env`` file, loaded without overriding
            variables that are already set

    Returns:
        Settings with defaults for anything not configured
    """
    if env_file:
        if os.path.isfile(env_file):
            dotenv.load_dotenv(env_file, override=False)
        else:
            logger.warning(f".env file not found at {env_file}")

    admission = AdmissionConfig(
        max_requests_per_hour=_env_int("RATE_LIMIT_MAX_REQUESTS_PER_HOUR", 30),
        max_tokens_per_hour=_env_int("RATE_LIMIT_MAX_TOKENS_PER_HOUR", 100_000),
        max_concurrent_requests=_env_int("RATE_LIMIT_MAX_CONCURRENT", 3),
        fallback_switch_ratio=_env_float("RATE_LIMIT_FALLBACK_RATIO", 0.8),
        provider_keys=_provider_keys(),
    )
    chunking = ChunkingConfig(
        max_chunk_size=_env_int("CHUNK_MAX_SIZE", 700),
        min_chunk_size=_env_int("CHUNK_MIN_SIZE", 100),
        overlap=_env_int("CHUNK_OVERLAP", 150),
    )
    embedding_cache = EmbeddingCacheConfig(
        max_size=_env_int("EMBEDDING_CACHE_MAX_SIZE", 1000),
        ttl=_env_float("EMBEDDING_CACHE_TTL_SECONDS", 2 * 24 * 60 * 60),
        cleanup_interval=_env_float("EMBEDDING_CACHE_CLEANUP_INTERVAL", 60 * 60),
    )
    fanout = FanoutConfig(
        max_parallel_queries=_env_int("MAX_PARALLEL_QUERIES", 3),
        max_parallel_searches=_env_int("MAX_PARALLEL_SEARCHES", 5),
        timeout=_env_float("PARALLEL_TIMEOUT_SECONDS", 30.0),
    )
    search = SearchConfig(
        top_k=_env_int("SEARCH_TOP_K", 8),
        similarity_threshold=_env_float("SEARCH_SIMILARITY_THRESHOLD", 0.68),
        filter_enabled=_env_bool("SEARCH_FILTER_ENABLED", True),
        max_retries=_env_int("SEARCH_MAX_RETRIES", 3),
        timeout=_env_float("SEARCH_TIMEOUT_SECONDS", 15.0),
        cache_max_size=_env_int("SEARCH_CACHE_MAX_SIZE", 1000),
    )

    # Accept lower-case variants as the ingestion scripts do
    openai_api_key = os.environ.get("OPENAI_API_KEY") or os.environ.get("openai_api_key")
    qdrant_api_key = os.environ.get("QDRANT_API_KEY") or os.environ.get("qdrant_api_key")

    return Settings(
        admission=admission,
        chunking=chunking,
        embedding_cache=embedding_cache,
        fanout=fanout,
        search=search,
        embedding_provider=os.environ.get("EMBEDDING_PROVIDER", "openai"),
        embedding_model=os.environ.get("EMBEDDING_MODEL") or None,
        openai_api_key=openai_api_key,
        huggingface_api_key=os.environ.get("HUGGINGFACE_API_KEY"),
        qdrant_url=os.environ.get("QDRANT_URL", "http://localhost:6333"),
        qdrant_api_key=qdrant_api_key,
        collection_name=os.environ.get("QDRANT_COLLECTION", "rag_data"),
    )
