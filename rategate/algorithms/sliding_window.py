"""
Sliding Window Log rate limiting algorithm implementation.

The sliding window log keeps one persisted entry per admitted request and
sums the cost of all entries inside the trailing window to decide.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from ..backends.base import IdentityResolver, UsageLogStore
from ..clock import SystemClock, TimeSource
from ..models import Algorithm, DecisionReason, RateLimitRequest, RateLimitResult
from .base import RateLimitAlgorithm, raise_if_cancelled

logger = logging.getLogger(__name__)


class SlidingWindowLog(RateLimitAlgorithm):
    """
    Sliding Window Log algorithm implementation.

    How it works:
    - Resolve the API key to its internal id (inactive keys are denied)
    - window_start = now - window_seconds
    - used = sum of cost over entries with occurred_at >= window_start
    - used + cost > limit -> deny, retry once the oldest entry leaves the window
    - otherwise append (key_id, endpoint, now, cost) and allow

    Example (limit=10, window_seconds=10):
        10 requests at t=0..9s are admitted
        The 11th at t=9.5s is denied with retry_after_ms=500
        (the t=0 entry leaves the window at t=10s)

    Atomicity:
        With ``atomic=True`` (default) the sum and the append happen in one
        store operation (``append_if_within_limit``), so concurrent checks
        for the same key cannot oversubscribe the window.

        With ``atomic=False`` the sum, the oldest-entry lookup and the append
        are separate calls. Two concurrent checks can both read ``used``
        before either appends and the window total can exceed ``limit``.

    Failures:
        Any store or resolver error becomes ``internal_error``; nothing is
        retried. Cancellation is not an error and propagates.
    """

    algorithm = Algorithm.SLIDING_WINDOW_LOG

    def __init__(
        self,
        resolver: IdentityResolver,
        store: UsageLogStore,
        clock: Optional[TimeSource] = None,
        atomic: bool = True,
    ) -> None:
        """
        Initialize Sliding Window Log algorithm.

        Args:
            resolver: Resolves presented API keys to internal key ids
            store: Append and query access to the usage log
            clock: Time source (defaults to the system clock)
            atomic: Use the store's atomic check-and-append
        """
        self.resolver = resolver
        self.store = store
        self.clock = clock or SystemClock()
        self.atomic = atomic
        logger.debug(f"Initialized SlidingWindowLog algorithm (atomic={atomic})")

    async def check(
        self, request: RateLimitRequest, cancel: Optional[asyncio.Event] = None
    ) -> RateLimitResult:
        """
        Check if a request is allowed under sliding window log rate limit.

        Args:
            request: Request carrying limit and window_seconds
            cancel: Optional cancellation signal, checked before each store call

        Returns:
            RateLimitResult with allowed status and metadata

        Raises:
            asyncio.CancelledError: If cancelled before or during a store call
        """
        now = self.clock.now()

        try:
            raise_if_cancelled(cancel)
            record = await self.resolver.resolve_key(request.identity)

            if record is None or not record.is_active:
                return RateLimitResult.deny(
                    DecisionReason.API_KEY_INVALID_OR_INACTIVE,
                    message="API key is invalid or inactive (sliding window).",
                )

            window_start = now - timedelta(seconds=request.window_seconds)

            if self.atomic:
                return await self._check_atomic(record.id, request, window_start, now, cancel)
            return await self._check_sequential(record.id, request, window_start, now, cancel)

        except Exception as e:
            logger.error(f"Sliding window evaluation failed for endpoint={request.endpoint}: {e}")
            return RateLimitResult.deny(
                DecisionReason.INTERNAL_ERROR,
                message=f"Sliding window evaluation failed: {e}",
            )

    async def _check_sequential(
        self,
        key_id: str,
        request: RateLimitRequest,
        window_start: datetime,
        now: datetime,
        cancel: Optional[asyncio.Event],
    ) -> RateLimitResult:
        raise_if_cancelled(cancel)
        used = await self.store.sum_cost(key_id, request.endpoint, window_start, now) or 0

        if used + request.cost > request.limit:
            raise_if_cancelled(cancel)
            oldest_at = await self.store.oldest_in_window(key_id, request.endpoint, window_start)
            return self._denied(request, used, oldest_at, now)

        raise_if_cancelled(cancel)
        await self.store.append(key_id, request.endpoint, now, request.cost, window_start)
        return self._allowed(request, used)

    async def _check_atomic(
        self,
        key_id: str,
        request: RateLimitRequest,
        window_start: datetime,
        now: datetime,
        cancel: Optional[asyncio.Event],
    ) -> RateLimitResult:
        raise_if_cancelled(cancel)
        admission = await self.store.append_if_within_limit(
            key_id,
            request.endpoint,
            window_start,
            now,
            request.cost,
            request.limit,
        )

        if not admission.admitted:
            return self._denied(request, admission.used, admission.oldest_at, now)
        return self._allowed(request, admission.used)

    def _allowed(self, request: RateLimitRequest, used: int) -> RateLimitResult:
        remaining = request.limit - (used + request.cost)
        logger.debug(
            f"Sliding window allowed endpoint={request.endpoint}, remaining={remaining}"
        )
        return RateLimitResult.allow(
            remaining=remaining,
            message="Request allowed by sliding window log.",
        )

    def _denied(
        self,
        request: RateLimitRequest,
        used: int,
        oldest_at: Optional[datetime],
        now: datetime,
    ) -> RateLimitResult:
        retry_after_ms = None
        if oldest_at is not None:
            retry_after_ms = calculate_retry_after_ms(oldest_at, request.window_seconds, now)

        remaining = max(0, request.limit - used)
        logger.debug(
            f"Sliding window denied endpoint={request.endpoint}, used={used}, "
            f"retry_after_ms={retry_after_ms}"
        )
        return RateLimitResult.deny(
            DecisionReason.LIMIT_EXCEEDED,
            retry_after_ms=retry_after_ms,
            remaining=remaining,
            message="Sliding window limit exceeded.",
        )


def calculate_retry_after_ms(oldest_at: datetime, window_seconds: int, now: datetime) -> int:
    """
    Milliseconds until the oldest in-window entry leaves the window.

    Args:
        oldest_at: Timestamp of the oldest entry still in the window
        window_seconds: Window length
        now: Current instant

    Returns:
        Wait in milliseconds, rounded up and never negative

    Examples:
        >>> from datetime import datetime, timezone
        >>> t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        >>> calculate_retry_after_ms(t0, 10, t0 + timedelta(seconds=9.5))
        500
        >>> calculate_retry_after_ms(t0, 10, t0 + timedelta(seconds=12))
        0
    """
    expiry = oldest_at + timedelta(seconds=window_seconds)
    wait_ms = (expiry - now) / timedelta(milliseconds=1)
    return max(0, math.ceil(wait_ms))
