"""Error classes raised by the retrieval control layer.

Quota denials are regular outcomes of ``AdmissionController.check_limit`` and
are not represented here; only the ``admit`` context manager turns a denial
into ``QuotaExceededError``.
"""
from typing import Optional


class RetrievalControlError(Exception):
    """Base class for control-layer errors"""
    pass


class QuotaExceededError(RetrievalControlError):
    """Raised by ``admit`` when the admission check denies the request"""

    def __init__(self, decision):
        self.decision = decision
        super().__init__(decision.reason or "Request denied by admission control")


class ProviderRateLimitedError(RetrievalControlError):
    """The LLM provider rejected a call because its credential is rate limited"""

    def __init__(self, message: str = "Provider rate limit hit", key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class EmbeddingComputeError(RetrievalControlError):
    """The embedding service failed to return a usable vector"""
    pass


class SearchProviderError(RetrievalControlError):
    """The vector-search provider failed or returned an invalid response"""
    pass


class OperationTimeoutError(RetrievalControlError):
    """A fanned-out operation did not settle before its deadline"""
    pass
