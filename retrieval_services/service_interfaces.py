"""Service interfaces for the retrieval control layer.

This module defines the request/response models shared by the services and
the abstract interfaces that every service and external provider must
implement, so the admission, caching, search and orchestration pieces can be
swapped or stubbed independently.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field


class ServiceRequest(BaseModel):
    """Base model for service requests."""
    request_id: str


class ServiceResponse(BaseModel):
    """Base model for service responses."""
    request_id: str
    status: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class SearchResult(BaseModel):
    """A single scored document returned by a vector search."""
    id: Optional[str] = None
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0


class ServiceInterface(ABC):
    """Base interface that all control-layer services must implement."""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        pass


class RequestProcessor(ServiceInterface):
    """A service that can also be driven through request models."""

    @abstractmethod
    async def process_request(self, request: ServiceRequest) -> ServiceResponse:
        """Process a service request and return a response."""
        pass


class VectorSearchProvider(ABC):
    """Boundary to the external vector-search service."""

    @abstractmethod
    async def find(
        self,
        query_vector: Sequence[float],
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """Return up to ``limit`` results ordered by descending similarity."""
        pass

    async def ping(self) -> None:
        """Issue a lightweight request to warm up the provider connection."""
        await self.find([0.0], limit=1)

    async def close(self) -> None:
        """Release provider resources."""
        return None


class EmbeddingProvider(ABC):
    """Boundary to the external embedding service."""

    @abstractmethod
    async def embed(
        self, texts: Sequence[str], api_key: Optional[str] = None
    ) -> List[List[float]]:
        """Return one embedding vector per input text, in order.

        ``api_key`` overrides the provider's configured credential for this call.
        """
        pass

    async def close(self) -> None:
        """Release provider resources."""
        return None
