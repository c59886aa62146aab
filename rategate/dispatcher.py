"""
Decision dispatcher: the single entry point of the admission engine.
"""

import asyncio
import logging
import time
from typing import Optional, Tuple

from .algorithms import RateLimitAlgorithm, SlidingWindowLog, TokenBucket
from .backends.base import IdentityResolver, PolicySource
from .clock import SystemClock, TimeSource
from .matcher import match_policy
from .metrics import GateMetrics
from .models import (
    Algorithm,
    DecisionReason,
    GateConfig,
    Policy,
    RateLimitRequest,
    RateLimitResult,
)

logger = logging.getLogger(__name__)

NO_ALGORITHM = "none"


class DecisionDispatcher:
    """
    Resolve identity, policy and algorithm, then decide.

    The dispatcher never raises for a decision: unknown keys, missing
    policies, unsupported algorithms and unexpected faults all come back as
    a denied ``RateLimitResult``. Only cancellation propagates.

    Examples:
        Basic usage:
        >>> store = InMemoryStore()
        >>> store.add_api_key("key-123", owner_id="tenant-1")
        >>> store.add_policy(Policy(
        ...     name="orders", owner_id="tenant-1", endpoint_pattern="/api/*",
        ...     algorithm="token_bucket", limit=100, window_seconds=60,
        ... ))
        >>> dispatcher = DecisionDispatcher.from_store(store)
        >>> result = await dispatcher.decide("key-123", "/api/orders")
        >>> result.allowed
        True
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        policies: PolicySource,
        token_bucket: TokenBucket,
        sliding_window: SlidingWindowLog,
        metrics: Optional[GateMetrics] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            resolver: Resolves presented API keys
            policies: Supplies the owner's policies
            token_bucket: In-memory token bucket algorithm
            sliding_window: Persisted sliding window log algorithm
            metrics: Optional metrics collector
        """
        self.resolver = resolver
        self.policies = policies
        self.token_bucket = token_bucket
        self.sliding_window = sliding_window
        self.metrics = metrics

        logger.debug("Initialized DecisionDispatcher")

    @classmethod
    def from_store(
        cls,
        store: IdentityResolver,
        config: Optional[GateConfig] = None,
        clock: Optional[TimeSource] = None,
        metrics: Optional[GateMetrics] = None,
    ) -> "DecisionDispatcher":
        """
        Wire a dispatcher around a store that is resolver, policy source and
        usage log at once (``InMemoryStore`` or ``RedisStore``).

        Args:
            store: Combined collaborator
            config: Gate configuration (defaults to ``GateConfig()``)
            clock: Time source shared by both algorithms
            metrics: Optional metrics collector
        """
        config = config or GateConfig()
        clock = clock or SystemClock()
        token_bucket = TokenBucket(
            clock=clock,
            idle_ttl_seconds=config.bucket_idle_ttl_seconds,
            sweep_interval_seconds=config.bucket_sweep_interval_seconds,
        )
        sliding_window = SlidingWindowLog(
            resolver=store,
            store=store,
            clock=clock,
            atomic=config.sliding_window_atomic,
        )
        return cls(
            resolver=store,
            policies=store,
            token_bucket=token_bucket,
            sliding_window=sliding_window,
            metrics=metrics,
        )

    async def decide(
        self,
        identity: str,
        endpoint: str,
        cost: int = 1,
        cancel: Optional[asyncio.Event] = None,
    ) -> RateLimitResult:
        """
        Decide whether a call is admitted.

        Args:
            identity: API key exactly as presented
            endpoint: Endpoint being called
            cost: Units this call consumes
            cancel: Optional cancellation signal passed to the algorithm

        Returns:
            RateLimitResult, always well-formed

        Raises:
            asyncio.CancelledError: If the check was cancelled
        """
        algorithm_label = NO_ALGORITHM
        start = time.perf_counter()

        try:
            result, algorithm_label = await self._decide(identity, endpoint, cost, cancel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while deciding for endpoint={endpoint}")
            result = RateLimitResult.deny(
                DecisionReason.INTERNAL_ERROR,
                message=f"An internal error occurred while evaluating the rate limit: {e}",
            )

        self._record(algorithm_label, result, start)
        return result

    async def _decide(
        self,
        identity: str,
        endpoint: str,
        cost: int,
        cancel: Optional[asyncio.Event],
    ) -> Tuple[RateLimitResult, str]:
        record = await self.resolver.resolve_key(identity)
        if record is None or not record.is_active:
            logger.debug(f"Rejected invalid or inactive API key for endpoint={endpoint}")
            return (
                RateLimitResult.deny(
                    DecisionReason.API_KEY_INVALID_OR_INACTIVE,
                    message="API key is invalid or inactive.",
                ),
                NO_ALGORITHM,
            )

        policies = await self.policies.policies_for(record.owner_id)
        policy = match_policy(policies, endpoint)
        if policy is None:
            return (
                RateLimitResult.deny(
                    DecisionReason.NO_MATCHING_POLICY,
                    message="No matching rate limit policy found for this endpoint.",
                ),
                NO_ALGORITHM,
            )

        request = build_request(identity, endpoint, cost, policy)
        result = await self._dispatch(policy.algorithm, request, cancel)
        return result, policy.algorithm

    async def check(
        self,
        algorithm: str,
        request: RateLimitRequest,
        cancel: Optional[asyncio.Event] = None,
    ) -> RateLimitResult:
        """
        Route an already-built request to an algorithm by tag.

        Same fault containment as ``decide``: unknown tags and unexpected
        errors become ``internal_error``.
        """
        start = time.perf_counter()

        try:
            result = await self._dispatch(algorithm, request, cancel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while checking endpoint={request.endpoint}")
            result = RateLimitResult.deny(
                DecisionReason.INTERNAL_ERROR,
                message=f"An internal error occurred while evaluating the rate limit: {e}",
            )

        self._record(algorithm, result, start)
        return result

    def algorithm_for(self, tag: str) -> Optional[RateLimitAlgorithm]:
        """The algorithm a policy tag selects, or None for an unknown tag."""
        try:
            algorithm = Algorithm(tag)
        except ValueError:
            return None

        if algorithm is Algorithm.TOKEN_BUCKET:
            return self.token_bucket
        elif algorithm is Algorithm.SLIDING_WINDOW_LOG:
            return self.sliding_window
        return None

    async def _dispatch(
        self,
        tag: str,
        request: RateLimitRequest,
        cancel: Optional[asyncio.Event],
    ) -> RateLimitResult:
        algorithm = self.algorithm_for(tag)
        if algorithm is None:
            logger.warning(f"Policy selects unsupported algorithm '{tag}'")
            return RateLimitResult.deny(
                DecisionReason.INTERNAL_ERROR,
                message=f"Rate limit algorithm '{tag}' is not supported.",
            )
        return await algorithm.check(request, cancel)

    def _record(self, algorithm: str, result: RateLimitResult, start: float) -> None:
        if result.reason is DecisionReason.INTERNAL_ERROR:
            logger.warning(f"Denied with internal error: {result.message}")
        else:
            logger.debug(
                f"Decision algorithm={algorithm}, allowed={result.allowed}, "
                f"reason={result.reason.value}, remaining={result.remaining}"
            )

        if self.metrics is None or not self.metrics.enabled:
            return

        label = algorithm if algorithm in _KNOWN_LABELS else "unknown"
        self.metrics.record_decision(label, result.reason.value, time.perf_counter() - start)
        self.metrics.set_token_buckets(self.token_bucket.bucket_count)


_KNOWN_LABELS = {NO_ALGORITHM, *(a.value for a in Algorithm)}


def build_request(identity: str, endpoint: str, cost: int, policy: Policy) -> RateLimitRequest:
    """
    Build the request an algorithm sees from the caller input and the policy.

    Raises:
        pydantic.ValidationError: If identity, endpoint or cost is invalid
    """
    return RateLimitRequest(
        identity=identity,
        endpoint=endpoint,
        cost=cost,
        limit=policy.limit,
        window_seconds=policy.window_seconds,
        burst_limit=policy.burst_limit,
    )
