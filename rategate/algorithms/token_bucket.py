"""
Token Bucket rate limiting algorithm implementation.

Buckets live in process memory, one per identity and endpoint. Each node
keeps its own buckets; nothing is shared across processes.
"""

import asyncio
import logging
import math
import threading
from datetime import datetime
from typing import Dict, Optional

from ..clock import SystemClock, TimeSource
from ..models import Algorithm, RateLimitRequest, RateLimitResult, DecisionReason
from .base import RateLimitAlgorithm

logger = logging.getLogger(__name__)


class BucketState:
    """Mutable state of one bucket. Only touched while holding ``lock``."""

    __slots__ = ("tokens", "last_refill", "capacity", "refill_rate", "lock", "evicted")

    def __init__(
        self, tokens: float, last_refill: datetime, capacity: int, refill_rate: float
    ) -> None:
        self.tokens = tokens
        self.last_refill = last_refill
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.lock = threading.Lock()
        self.evicted = False

    def seconds_until_full(self) -> float:
        """Time from ``last_refill`` until the bucket would be back at capacity."""
        missing = max(0.0, self.capacity - self.tokens)
        if missing == 0:
            return 0.0
        if self.refill_rate <= 0:
            return math.inf
        return missing / self.refill_rate


class TokenBucket(RateLimitAlgorithm):
    """
    Token Bucket algorithm implementation.

    How it works:
    - A bucket holds up to ``limit`` tokens and starts full
    - Tokens refill continuously at ``limit / window_seconds`` per second
    - Refill is computed lazily on access, there is no background timer
    - A request of cost N is admitted iff at least N tokens are available

    Example:
        limit=100, window_seconds=60 -> capacity 100, ~1.67 tokens/sec
        Allows a burst of 100 requests, then a sustained 1.67 req/sec

    Concurrency:
        Every bucket has its own lock, so unrelated keys never contend.
        The bucket map itself is only ever written with ``dict.setdefault``
        (atomic) and by the idle sweep, which takes the bucket's lock
        before removing it.

    Memory:
        Without ``idle_ttl_seconds`` buckets are kept forever. With it,
        buckets idle for longer than the TTL, and long enough to have
        refilled to capacity, are swept at most once per
        ``sweep_interval_seconds``. An evicted bucket comes back full, which
        is exactly the state it had refilled to.
    """

    algorithm = Algorithm.TOKEN_BUCKET

    def __init__(
        self,
        clock: Optional[TimeSource] = None,
        idle_ttl_seconds: Optional[int] = None,
        sweep_interval_seconds: int = 60,
    ) -> None:
        """
        Initialize Token Bucket algorithm.

        Args:
            clock: Time source (defaults to the system clock)
            idle_ttl_seconds: Evict buckets idle for longer than this
            sweep_interval_seconds: Minimum time between two sweeps
        """
        self.clock = clock or SystemClock()
        self.idle_ttl_seconds = idle_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._buckets: Dict[str, BucketState] = {}
        self._sweep_lock = threading.Lock()
        self._last_sweep: Optional[datetime] = None
        logger.debug("Initialized TokenBucket algorithm")

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def peek(self, key: str) -> Optional[float]:
        """Current stored token count for a bucket key, without refilling."""
        state = self._buckets.get(key)
        if state is None:
            return None
        with state.lock:
            return state.tokens

    async def check(
        self, request: RateLimitRequest, cancel: Optional[asyncio.Event] = None
    ) -> RateLimitResult:
        """
        Check if a request is allowed under token bucket rate limit.

        Never suspends and never raises: there is no I/O to fail. ``cancel``
        is accepted for contract compatibility; the check completes
        atomically either way.

        Args:
            request: Request carrying limit (capacity) and window_seconds
            cancel: Ignored

        Returns:
            RateLimitResult with allowed status and metadata
        """
        return self.check_now(request)

    def check_now(self, request: RateLimitRequest) -> RateLimitResult:
        """Synchronous form of ``check`` for callers outside an event loop."""
        now = self.clock.now()

        if self.idle_ttl_seconds is not None:
            self._maybe_sweep(now)

        capacity = request.limit
        refill_rate = capacity / request.window_seconds
        key = request.bucket_key

        while True:
            state = self._buckets.setdefault(
                key, BucketState(float(capacity), now, capacity, refill_rate)
            )
            with state.lock:
                if state.evicted:
                    # Lost a race with the sweeper; pick up the fresh bucket
                    continue
                return self._consume(state, request, capacity, refill_rate, now)

    def _consume(
        self,
        state: BucketState,
        request: RateLimitRequest,
        capacity: int,
        refill_rate: float,
        now: datetime,
    ) -> RateLimitResult:
        """Refill and debit a bucket. Caller holds ``state.lock``."""
        state.capacity = capacity
        state.refill_rate = refill_rate
        elapsed = (now - state.last_refill).total_seconds()
        if elapsed > 0:
            state.tokens = min(capacity, state.tokens + elapsed * refill_rate)
            state.last_refill = now
        # A policy whose limit shrank must not leave more than capacity behind
        state.tokens = min(float(capacity), state.tokens)

        if state.tokens >= request.cost:
            state.tokens -= request.cost
            remaining = math.floor(state.tokens)
            logger.debug(
                f"Token bucket allowed key={request.bucket_key}, remaining={remaining}"
            )
            return RateLimitResult.allow(
                remaining=remaining,
                message="Request allowed by token bucket.",
            )

        missing = request.cost - state.tokens
        retry_after_ms = None
        if refill_rate > 0:
            retry_after_ms = math.ceil(missing / refill_rate * 1000)

        remaining = math.floor(max(0.0, state.tokens))
        logger.debug(
            f"Token bucket denied key={request.bucket_key}, "
            f"tokens={state.tokens:.3f}, retry_after_ms={retry_after_ms}"
        )
        return RateLimitResult.deny(
            DecisionReason.LIMIT_EXCEEDED,
            retry_after_ms=retry_after_ms,
            remaining=remaining,
            message="Token bucket limit exceeded.",
        )

    def _maybe_sweep(self, now: datetime) -> None:
        if self._last_sweep is not None:
            since = (now - self._last_sweep).total_seconds()
            if since < self.sweep_interval_seconds:
                return
        # Only one caller sweeps; everyone else carries on
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep = now
            self._sweep_locked(now)
        finally:
            self._sweep_lock.release()

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Evict buckets idle for longer than ``idle_ttl_seconds``.

        Args:
            now: Reference instant (defaults to the clock)

        Returns:
            Number of buckets evicted (0 when no TTL is configured)
        """
        if self.idle_ttl_seconds is None:
            return 0
        now = now or self.clock.now()
        with self._sweep_lock:
            self._last_sweep = now
            return self._sweep_locked(now)

    def _sweep_locked(self, now: datetime) -> int:
        evicted = 0
        for key, state in list(self._buckets.items()):
            with state.lock:
                idle = (now - state.last_refill).total_seconds()
                # Only a bucket that has already refilled to capacity may go
                if idle <= max(self.idle_ttl_seconds, state.seconds_until_full()):
                    continue
                if self._buckets.get(key) is state:
                    del self._buckets[key]
                    state.evicted = True
                    evicted += 1

        if evicted:
            logger.debug(f"Evicted {evicted} idle token buckets")
        return evicted

    def reset(self, key: Optional[str] = None) -> None:
        """Drop one bucket by key, or every bucket when no key is given."""
        keys = [key] if key is not None else list(self._buckets)
        for k in keys:
            state = self._buckets.get(k)
            if state is None:
                continue
            with state.lock:
                if self._buckets.get(k) is state:
                    del self._buckets[k]
                    state.evicted = True
