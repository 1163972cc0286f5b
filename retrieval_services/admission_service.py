"""Admission Service implementation.

This service tracks per-user request, token and concurrency quotas on a
rolling hourly window, recommends which backend tier a request should use,
and rotates between provider credentials when one of them is rate limited.
Denials are regular decisions, never exceptions, so callers can degrade to
the fallback tier instead of failing the request.
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from pydantic import BaseModel, Field

from retrieval_services.errors import QuotaExceededError
from retrieval_services.service_interfaces import ServiceInterface

# Configure logging
logger = logging.getLogger(__name__)

HOUR = 60 * 60


class BackendTier(str, Enum):
    """Backend model tiers a request can be routed to."""
    PRIMARY = "primary"
    FALLBACK = "fallback"


class DenialReason(str, Enum):
    """Why an admission check denied a request."""
    CONCURRENCY_EXHAUSTED = "concurrency_exhausted"
    REQUEST_LIMIT = "request_limit"
    TOKEN_LIMIT = "token_limit"


class AdmissionConfig(BaseModel):
    """Quota limits applied to every user."""
    max_requests_per_hour: int = 30
    max_tokens_per_hour: int = 100_000
    max_concurrent_requests: int = 3
    fallback_switch_ratio: float = 0.8
    window_seconds: float = HOUR
    provider_keys: List[str] = Field(default_factory=list)


class QuotaRemaining(BaseModel):
    requests: int
    tokens: int
    concurrency: int


class AdmissionDecision(BaseModel):
    """Outcome of an admission check."""
    allowed: bool
    tier: BackendTier
    reason: Optional[str] = None
    denial: Optional[DenialReason] = None
    remaining: QuotaRemaining

    @property
    def user_message(self) -> Optional[str]:
        if self.allowed:
            return None
        return "Usage limit reached, please try a lighter-weight mode."


class RotationOutcome(BaseModel):
    """Result of handling a provider rate-limit event."""
    action: str  # "rotate_key" or "use_fallback"
    key: Optional[str] = None
    key_index: Optional[int] = None


class UsageStats(BaseModel):
    requests_used: int
    requests_remaining: int
    tokens_used: int
    tokens_remaining: int
    concurrent_requests: int
    tier: BackendTier
    window_resets_at: datetime


class ActiveUser(BaseModel):
    user_id: str
    requests_used: int
    tokens_used: int
    concurrent_requests: int
    tier: BackendTier


@dataclass
class UserQuota:
    """Per-user counters for the current window."""

    window_start: float
    request_count: int = 0
    token_count: int = 0
    concurrent_requests: int = 0
    tier: BackendTier = BackendTier.PRIMARY

    def reset(self, now: float) -> None:
        # In-flight requests still hold their slots in the new window
        self.window_start = now
        self.request_count = 0
        self.token_count = 0
        self.tier = BackendTier.PRIMARY


@dataclass
class AdmissionTicket:
    """Handle for one admitted unit of work, released by ``admit``."""

    user_id: str
    decision: AdmissionDecision
    tokens_used: int = 0

    @property
    def tier(self) -> BackendTier:
        return self.decision.tier

    def record_tokens(self, tokens: int) -> None:
        self.tokens_used += max(0, int(tokens))


class ProviderKeyRing:
    """Ordered provider credentials, per-user selection and the disabled set.

    A key disabled for one user is skipped for every user sharing the ring.
    """

    def __init__(self, keys: Optional[Sequence[str]] = None):
        self.keys: List[str] = [k for k in (keys or []) if k]
        self._disabled: set = set()
        self._user_index: Dict[str, int] = {}
        self._lock = threading.RLock()

    @property
    def disabled_keys(self) -> List[str]:
        with self._lock:
            return [k for k in self.keys if k in self._disabled]

    def is_disabled(self, key: str) -> bool:
        with self._lock:
            return key in self._disabled

    def current_index(self, user_id: str) -> int:
        with self._lock:
            return self._user_index.get(user_id, 0)

    def resolve(self, user_id: str) -> Optional[int]:
        """Return the user's key index, advancing past disabled keys."""
        with self._lock:
            if not self.keys:
                return None
            start = self._user_index.get(user_id, 0)
            for offset in range(len(self.keys)):
                index = (start + offset) % len(self.keys)
                if self.keys[index] not in self._disabled:
                    self._user_index[user_id] = index
                    return index
            return None

    def rotate(self, user_id: str) -> RotationOutcome:
        """Disable the user's current key and move them to the next usable one."""
        with self._lock:
            if not self.keys:
                return RotationOutcome(action="use_fallback")

            current = self._user_index.get(user_id, 0)
            self._disabled.add(self.keys[current])
            logger.warning(f"Provider key {current + 1} disabled (rate limit hit)")

            for offset in range(1, len(self.keys)):
                index = (current + offset) % len(self.keys)
                if self.keys[index] not in self._disabled:
                    self._user_index[user_id] = index
                    logger.info(f"User {user_id} rotated to provider key {index + 1}")
                    return RotationOutcome(action="rotate_key", key=self.keys[index], key_index=index)

            return RotationOutcome(action="use_fallback")

    def reset(self) -> None:
        with self._lock:
            self._disabled.clear()
            self._user_index.clear()


class AdmissionController(ServiceInterface):
    """Per-user admission control with sticky fallback tier and key rotation."""

    def __init__(
        self,
        config: Optional[AdmissionConfig] = None,
        key_ring: Optional[ProviderKeyRing] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the admission controller.

        Args:
            config: Quota limits; defaults mirror the production limits
            key_ring: Shared provider key ring, built from ``config.provider_keys`` if omitted
            clock: Time source in seconds, injectable for tests
        """
        self.config = config or AdmissionConfig()
        self.key_ring = key_ring if key_ring is not None else ProviderKeyRing(self.config.provider_keys)
        self.clock = clock
        self._quotas: Dict[str, UserQuota] = {}
        self._lock = threading.RLock()

        logger.info(
            f"Admission controller initialized: {self.config.max_requests_per_hour} req/h, "
            f"{self.config.max_tokens_per_hour} tokens/h, "
            f"{self.config.max_concurrent_requests} concurrent, "
            f"{len(self.key_ring.keys)} provider keys"
        )

    def _get_or_create_quota(self, user_id: str) -> UserQuota:
        # Caller holds self._lock
        now = self.clock()
        quota = self._quotas.get(user_id)
        if quota is None:
            quota = UserQuota(window_start=now)
            self._quotas[user_id] = quota
        elif now - quota.window_start > self.config.window_seconds:
            quota.reset(now)
            logger.debug(f"Quota window reset for user {user_id}")
        return quota

    def _remaining(self, quota: UserQuota) -> QuotaRemaining:
        return QuotaRemaining(
            requests=max(0, self.config.max_requests_per_hour - quota.request_count),
            tokens=max(0, self.config.max_tokens_per_hour - quota.token_count),
            concurrency=max(0, self.config.max_concurrent_requests - quota.concurrent_requests),
        )

    def check_limit(self, user_id: str) -> AdmissionDecision:
        """Check whether a request is allowed and which tier it should use."""
        cfg = self.config
        with self._lock:
            quota = self._get_or_create_quota(user_id)
            remaining = self._remaining(quota)

            if quota.concurrent_requests >= cfg.max_concurrent_requests:
                return AdmissionDecision(
                    allowed=False,
                    tier=BackendTier.FALLBACK,
                    denial=DenialReason.CONCURRENCY_EXHAUSTED,
                    reason=f"Too many concurrent requests ({quota.concurrent_requests}/{cfg.max_concurrent_requests})",
                    remaining=remaining,
                )

            if quota.request_count >= cfg.max_requests_per_hour:
                return AdmissionDecision(
                    allowed=False,
                    tier=BackendTier.FALLBACK,
                    denial=DenialReason.REQUEST_LIMIT,
                    reason=f"Request limit reached ({quota.request_count}/{cfg.max_requests_per_hour})",
                    remaining=remaining.model_copy(update={"requests": 0}),
                )

            if quota.token_count >= cfg.max_tokens_per_hour:
                return AdmissionDecision(
                    allowed=False,
                    tier=BackendTier.FALLBACK,
                    denial=DenialReason.TOKEN_LIMIT,
                    reason=f"Token limit reached ({quota.token_count}/{cfg.max_tokens_per_hour})",
                    remaining=remaining.model_copy(update={"tokens": 0}),
                )

            # Approaching either cap moves the user to the fallback tier for the rest of the window
            if (
                quota.request_count >= cfg.max_requests_per_hour * cfg.fallback_switch_ratio
                or quota.token_count >= cfg.max_tokens_per_hour * cfg.fallback_switch_ratio
            ):
                if quota.tier != BackendTier.FALLBACK:
                    logger.info(f"User {user_id} approaching quota, switching to fallback tier")
                quota.tier = BackendTier.FALLBACK

            return AdmissionDecision(allowed=True, tier=quota.tier, remaining=remaining)

    def start_request(self, user_id: str) -> None:
        """Mark a request as started."""
        with self._lock:
            quota = self._get_or_create_quota(user_id)
            quota.concurrent_requests += 1
            quota.request_count += 1

    def end_request(self, user_id: str, tokens_used: int = 0) -> None:
        """Mark a request as finished and record its token usage."""
        with self._lock:
            quota = self._get_or_create_quota(user_id)
            quota.concurrent_requests = max(0, quota.concurrent_requests - 1)
            quota.token_count += max(0, int(tokens_used))
            logger.debug(
                f"User {user_id}: {quota.request_count} requests, "
                f"{quota.token_count} tokens used this window"
            )

    @contextmanager
    def admit(self, user_id: str) -> Iterator[AdmissionTicket]:
        """Admit one unit of work, guaranteeing ``end_request`` on exit.

        Raises:
            QuotaExceededError: if the admission check denies the request
        """
        with self._lock:
            decision = self.check_limit(user_id)
            if not decision.allowed:
                raise QuotaExceededError(decision)
            self.start_request(user_id)

        ticket = AdmissionTicket(user_id=user_id, decision=decision)
        try:
            yield ticket
        finally:
            self.end_request(user_id, ticket.tokens_used)

    def handle_provider_rate_limit(self, user_id: str) -> RotationOutcome:
        """Rotate the user to the next provider key, or pin them to the fallback tier."""
        with self._lock:
            quota = self._get_or_create_quota(user_id)
            outcome = self.key_ring.rotate(user_id)
            if outcome.action == "use_fallback":
                quota.tier = BackendTier.FALLBACK
                logger.warning(f"All provider keys exhausted for user {user_id}, switching to fallback tier")
            return outcome

    def get_provider_key(self, user_id: str) -> Optional[str]:
        """Return the provider key the user should call with, if any is usable."""
        index = self.key_ring.resolve(user_id)
        if index is None:
            return None
        return self.key_ring.keys[index]

    def get_usage_stats(self, user_id: str) -> UsageStats:
        with self._lock:
            quota = self._get_or_create_quota(user_id)
            remaining = self._remaining(quota)
            return UsageStats(
                requests_used=quota.request_count,
                requests_remaining=remaining.requests,
                tokens_used=quota.token_count,
                tokens_remaining=remaining.tokens,
                concurrent_requests=quota.concurrent_requests,
                tier=quota.tier,
                window_resets_at=datetime.fromtimestamp(
                    quota.window_start + self.config.window_seconds, tz=timezone.utc
                ),
            )

    def get_active_users(self) -> List[ActiveUser]:
        """Users whose quota window is still open (for monitoring)."""
        now = self.clock()
        with self._lock:
            return [
                ActiveUser(
                    user_id=user_id,
                    requests_used=quota.request_count,
                    tokens_used=quota.token_count,
                    concurrent_requests=quota.concurrent_requests,
                    tier=quota.tier,
                )
                for user_id, quota in self._quotas.items()
                if now - quota.window_start < self.config.window_seconds
            ]

    def reset_user_quota(self, user_id: str) -> None:
        """Reset user quota (admin function)."""
        with self._lock:
            self._quotas.pop(user_id, None)
        logger.info(f"Reset quota for user {user_id}")

    def clear_all_quotas(self) -> None:
        """Clear all quotas (use sparingly)."""
        with self._lock:
            self._quotas.clear()
        logger.info("All quotas cleared")

    def reset_provider_keys(self) -> None:
        """Re-enable every disabled provider key."""
        self.key_ring.reset()
        logger.info("Provider key rotation state reset")

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        with self._lock:
            tracked_users = len(self._quotas)
        disabled = len(self.key_ring.disabled_keys)
        total = len(self.key_ring.keys)
        return {
            "status": "degraded" if total and disabled == total else "healthy",
            "tracked_users": tracked_users,
            "provider_keys": total,
            "disabled_provider_keys": disabled,
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down admission controller")


# FastAPI specific code
def create_fastapi_app(controller: Optional[AdmissionController] = None):
    """Create a FastAPI app exposing the administrative quota endpoints."""
    from fastapi import FastAPI, HTTPException, Query

    app = FastAPI(title="Retrieval Admission Service", version="1.0.0")

    if controller is None:
        from retrieval_services.settings import load_settings
        controller = AdmissionController(config=load_settings().admission)

    app.state.controller = controller

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return await controller.health_check()

    @app.get("/rate-limit-stats")
    async def rate_limit_stats():
        """Snapshot of every user with an open quota window."""
        users = controller.get_active_users()
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_active_users": len(users),
            "users": [u.model_dump() for u in users],
            "summary": {
                "total_requests": sum(u.requests_used for u in users),
                "total_tokens": sum(u.tokens_used for u in users),
                "total_concurrent": sum(u.concurrent_requests for u in users),
            },
            "disabled_provider_keys": len(controller.key_ring.disabled_keys),
        }

    @app.get("/usage/{user_id}")
    async def usage(user_id: str):
        return controller.get_usage_stats(user_id).model_dump()

    @app.post("/rate-limit-reset")
    async def rate_limit_reset(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        reset_all: bool = Query(default=False, alias="resetAll"),
    ):
        """Reset one user's quota, or every quota with ``resetAll=true``."""
        if reset_all:
            controller.clear_all_quotas()
            return {"success": True, "message": "All quotas cleared"}

        if not user_id:
            raise HTTPException(status_code=400, detail="userId parameter required")

        controller.reset_user_quota(user_id)
        return {"success": True, "message": f"Quota reset for user {user_id}"}

    @app.post("/provider-keys/reset")
    async def provider_keys_reset():
        controller.reset_provider_keys()
        return {"success": True, "message": "Provider keys re-enabled"}

    return app
