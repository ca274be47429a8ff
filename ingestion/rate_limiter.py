"""
Outbound rate limiting for external platform APIs.

Two layers protect every request a connector makes:

- ``RateLimiter``: a sliding window per (tenant, connector type) kept in the
  ephemeral store so every worker process shares the same budget. If the
  store is unavailable the limiter fails open.
- ``CircuitBreaker``: one per connector instance. When the platform answers
  HTTP 429 every request issued through that instance waits until the
  pause expires.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, NamedTuple, Optional
import asyncio
import json
import time
import logging

from core.redis import EphemeralStore

logger = logging.getLogger(__name__)

RATE_LIMIT_429_TTL_SECONDS = 300
UNKNOWN_TYPE_REMAINING = 999


@dataclass(frozen=True)
class RateLimitProfile:
    requests_per_minute: int
    burst_size: int
    window_size_ms: int = 60_000
    retry_after_ms: int = 5_000


RATE_LIMIT_PROFILES: Dict[str, RateLimitProfile] = {
    "FRESHSERVICE": RateLimitProfile(requests_per_minute=60, burst_size=10, retry_after_ms=5_000),
    "MANAGEENGINE_SDP": RateLimitProfile(requests_per_minute=40, burst_size=5, retry_after_ms=30_000),
    "SERVICENOW": RateLimitProfile(requests_per_minute=40, burst_size=5, retry_after_ms=30_000),
    "ZENDESK": RateLimitProfile(requests_per_minute=60, burst_size=8, retry_after_ms=20_000),
}


class RateLimitResult(NamedTuple):
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float  # Unix timestamp
    retry_after_ms: Optional[int] = None


class RateLimiter:
    """
    Sliding-window admission control shared across processes.

    Keys look like ``rate_limit:FRESHSERVICE:<tenant>``. Timestamps are only
    recorded for admitted requests, so a refused caller does not eat into
    the window.
    """

    def __init__(
        self,
        store: EphemeralStore,
        profiles: Optional[Dict[str, RateLimitProfile]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.profiles = profiles if profiles is not None else RATE_LIMIT_PROFILES
        self._clock = clock
        self._sleep = sleep

    def profile_for(self, connector_type: str) -> Optional[RateLimitProfile]:
        return self.profiles.get(connector_type.upper())

    @staticmethod
    def window_key(tenant_id: str, connector_type: str) -> str:
        return f"rate_limit:{connector_type.upper()}:{tenant_id}"

    @staticmethod
    def rate_limit_429_key(tenant_id: str, connector_type: str) -> str:
        return f"rate_limit_429:{connector_type.upper()}:{tenant_id}"

    async def check_and_reserve(
        self, tenant_id: str, connector_type: str, n: int = 1
    ) -> RateLimitResult:
        """
        Admit and record ``n`` requests if the window has room.

        Args:
            tenant_id: Tenant whose budget is consumed
            connector_type: Platform type, selects the profile
            n: Number of requests to reserve

        Returns:
            RateLimitResult; when refused, retry_after_ms is the profile default
        """
        profile = self.profile_for(connector_type)
        now = self._clock()

        if profile is None:
            logger.warning(f"No rate limit profile for connector type {connector_type}; allowing request")
            return RateLimitResult(allowed=True, remaining=UNKNOWN_TYPE_REMAINING, reset_at=now)

        window_seconds = profile.window_size_ms / 1000
        key = self.window_key(tenant_id, connector_type)
        reset_at = now + window_seconds

        try:
            count = await self.store.window_count(key, now - window_seconds)

            if count + n <= profile.requests_per_minute:
                await self.store.window_add(key, [now] * n, int(window_seconds))
                return RateLimitResult(
                    allowed=True,
                    remaining=profile.requests_per_minute - count - n,
                    reset_at=reset_at
                )

            logger.debug(
                f"Rate limit reached for {connector_type} tenant={tenant_id}: "
                f"{count}/{profile.requests_per_minute} in window"
            )
            return RateLimitResult(
                allowed=False,
                remaining=max(0, profile.requests_per_minute - count),
                reset_at=reset_at,
                retry_after_ms=profile.retry_after_ms
            )

        except Exception as e:
            # Fail open
            logger.warning(f"Rate limit check failed for {connector_type}, allowing request: {e}")
            return RateLimitResult(allowed=True, remaining=UNKNOWN_TYPE_REMAINING, reset_at=reset_at)

    async def wait_for_reset(self, connector_type: str, retry_after_ms: Optional[int] = None) -> None:
        """Sleep for the given delay, or the profile's default retry-after."""
        if retry_after_ms is None:
            profile = self.profile_for(connector_type)
            retry_after_ms = profile.retry_after_ms if profile else 1_000
        logger.info(f"Waiting {retry_after_ms}ms for {connector_type} rate limit window")
        await self._sleep(retry_after_ms / 1000)

    async def record_429(
        self, tenant_id: str, connector_type: str, retry_after_seconds: Optional[float] = None
    ) -> None:
        """Remember the last 429 and count them; best effort."""
        key = self.rate_limit_429_key(tenant_id, connector_type)
        try:
            count = await self.store.incr(f"{key}:count", RATE_LIMIT_429_TTL_SECONDS)
            await self.store.set(
                key,
                json.dumps({
                    "timestamp": self._clock(),
                    "retry_after_seconds": retry_after_seconds,
                    "count": count
                }),
                RATE_LIMIT_429_TTL_SECONDS
            )
            logger.warning(
                f"HTTP 429 from {connector_type} for tenant={tenant_id} "
                f"(#{count} in last {RATE_LIMIT_429_TTL_SECONDS}s)"
            )
        except Exception as e:
            logger.warning(f"Failed to record 429 for {connector_type}: {e}")

    async def get_status(self, tenant_id: str, connector_type: str) -> Dict:
        """Current usage of the window, for monitoring."""
        profile = self.profile_for(connector_type)
        now = self._clock()
        if profile is None:
            return {
                "connector_type": connector_type.upper(),
                "requests_per_minute": UNKNOWN_TYPE_REMAINING,
                "current_requests": 0,
                "remaining": UNKNOWN_TYPE_REMAINING,
                "reset_at": now,
                "last_429": None,
            }

        window_seconds = profile.window_size_ms / 1000
        current = 0
        last_429 = None
        try:
            current = await self.store.window_count(
                self.window_key(tenant_id, connector_type), now - window_seconds
            )
            raw = await self.store.get(self.rate_limit_429_key(tenant_id, connector_type))
            last_429 = json.loads(raw) if raw else None
        except Exception as e:
            logger.warning(f"Failed to read rate limit status for {connector_type}: {e}")

        return {
            "connector_type": connector_type.upper(),
            "requests_per_minute": profile.requests_per_minute,
            "current_requests": current,
            "remaining": max(0, profile.requests_per_minute - current),
            "reset_at": now + window_seconds,
            "last_429": last_429,
        }


class CircuitBreaker:
    """
    Pause gate shared by all requests of one connector instance.

    ``pause`` extends the resume time and waits for it; ``wait`` is awaited
    before every request so requests in flight on other tasks stop too.
    """

    def __init__(
        self,
        name: str,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._resume_at = 0.0
        self.pauses = 0

    @property
    def is_open(self) -> bool:
        return self._clock() < self._resume_at

    def remaining_seconds(self) -> float:
        return max(0.0, self._resume_at - self._clock())

    async def pause(self, seconds: float) -> None:
        self.pauses += 1
        self._resume_at = max(self._resume_at, self._clock() + seconds)
        logger.warning(f"Circuit breaker paused {self.name} for {seconds}s")
        await self.wait()

    async def wait(self) -> None:
        remaining = self.remaining_seconds()
        while remaining > 0:
            await self._sleep(remaining)
            remaining = self.remaining_seconds()
