"""
RateGate - Admission-control decision engine for Python
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Decides in real time whether a caller may reach an endpoint, under per-tenant
policies backed by a token bucket or a sliding window log.

Basic usage:
    >>> from rategate import DecisionDispatcher, InMemoryStore, Policy
    >>> store = InMemoryStore()
    >>> store.add_api_key("key-123", owner_id="tenant-1")
    >>> store.add_policy(Policy(
    ...     name="default", owner_id="tenant-1", endpoint_pattern="*",
    ...     algorithm="token_bucket", limit=100, window_seconds=60,
    ... ))
    >>> dispatcher = DecisionDispatcher.from_store(store)
    >>> result = await dispatcher.decide("key-123", "/api/orders")
    >>> result.allowed, result.remaining
    (True, 99)

FastAPI integration:
    >>> from fastapi import FastAPI
    >>> from rategate.middleware import AdmissionMiddleware
    >>>
    >>> app = FastAPI()
    >>> app.add_middleware(AdmissionMiddleware, dispatcher=dispatcher)
"""

from .algorithms import RateLimitAlgorithm, SlidingWindowLog, TokenBucket
from .backends import InMemoryStore, RedisStore
from .clock import ManualClock, SystemClock, TimeSource
from .dispatcher import DecisionDispatcher
from .exceptions import BackendError, ConfigError, RateGateError
from .matcher import match_policy
from .metrics import GateMetrics
from .models import (
    Algorithm,
    ApiKeyRecord,
    DecisionReason,
    GateConfig,
    Policy,
    RateLimitRequest,
    RateLimitResult,
    UsageLogEntry,
)

__version__ = "0.1.0"

__all__ = [
    "Algorithm",
    "ApiKeyRecord",
    "BackendError",
    "ConfigError",
    "DecisionDispatcher",
    "DecisionReason",
    "GateConfig",
    "GateMetrics",
    "InMemoryStore",
    "ManualClock",
    "Policy",
    "RateGateError",
    "RateLimitAlgorithm",
    "RateLimitRequest",
    "RateLimitResult",
    "RedisStore",
    "SlidingWindowLog",
    "SystemClock",
    "TimeSource",
    "TokenBucket",
    "UsageLogEntry",
    "match_policy",
]
