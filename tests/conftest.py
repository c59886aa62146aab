"""
Pytest configuration and fixtures for RateGate tests.
"""

import logging
import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import redis.asyncio as redis

from rategate import (
    DecisionDispatcher,
    GateConfig,
    GateMetrics,
    InMemoryStore,
    ManualClock,
    Policy,
    RateLimitRequest,
    RedisStore,
    SlidingWindowLog,
    TokenBucket,
)

# Configure logging for tests
logging.basicConfig(level=logging.DEBUG)

API_KEY = "key-001"
OWNER_ID = "tenant-001"


@pytest.fixture
def clock() -> ManualClock:
    """Manually driven clock starting at 2024-01-01T00:00:00Z."""
    return ManualClock()


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def token_bucket(clock) -> TokenBucket:
    return TokenBucket(clock=clock)


@pytest.fixture
def make_request():
    """
    Factory fixture for rate limit requests with sensible defaults.
    """

    def _make_request(**kwargs) -> RateLimitRequest:
        values = {
            "identity": API_KEY,
            "endpoint": "/api/orders",
            "cost": 1,
            "limit": 10,
            "window_seconds": 10,
        }
        values.update(kwargs)
        return RateLimitRequest(**values)

    return _make_request


@pytest.fixture
def make_policy():
    """
    Factory fixture for policies owned by the default tenant.
    """

    def _make_policy(pattern: str = "*", **kwargs) -> Policy:
        values = {
            "name": f"policy {pattern}",
            "owner_id": OWNER_ID,
            "endpoint_pattern": pattern,
            "algorithm": "token_bucket",
            "limit": 10,
            "window_seconds": 10,
        }
        values.update(kwargs)
        return Policy(**values)

    return _make_policy


@pytest.fixture
def seeded_store(store, make_policy) -> InMemoryStore:
    """
    Store with one active key, one inactive key and a catch-all policy
    per algorithm prefix.
    """
    store.add_api_key(API_KEY, owner_id=OWNER_ID, key_id="1")
    store.add_api_key("key-inactive", owner_id=OWNER_ID, is_active=False, key_id="2")
    store.add_policy(make_policy("/tb/*", algorithm="token_bucket"))
    store.add_policy(make_policy("/sw/*", algorithm="sliding_window_log"))
    return store


@pytest.fixture
def sliding_window(seeded_store, clock) -> SlidingWindowLog:
    return SlidingWindowLog(resolver=seeded_store, store=seeded_store, clock=clock)


@pytest.fixture
def metrics() -> GateMetrics:
    return GateMetrics(namespace="test")


@pytest.fixture
def dispatcher(seeded_store, clock, metrics) -> DecisionDispatcher:
    return DecisionDispatcher.from_store(seeded_store, clock=clock, metrics=metrics)


@pytest.fixture(scope="session")
def redis_url() -> str:
    """Get Redis URL from environment or use default."""
    return os.getenv("REDIS_URL", "redis://localhost:6379")


@pytest.fixture
async def redis_client(redis_url: str) -> AsyncGenerator[redis.Redis, None]:
    """
    Create Redis client for tests.

    Skips the test when Redis is not reachable.
    """
    client = redis.from_url(redis_url, decode_responses=True)

    try:
        await client.ping()
    except Exception as e:
        await client.aclose()
        pytest.skip(f"Redis not available: {e}")

    yield client

    await client.aclose()


@pytest.fixture
async def redis_store(redis_client, redis_url: str) -> AsyncGenerator[RedisStore, None]:
    """
    Connected RedisStore with a unique key prefix for each test.

    Keys written under the prefix are deleted afterwards.
    """
    prefix = f"test:{uuid.uuid4().hex[:8]}:rategate"
    store = RedisStore(GateConfig(redis_url=redis_url, key_prefix=prefix))

    await store.connect()
    yield store
    await store.close()

    async for key in redis_client.scan_iter(match=f"{prefix}:*"):
        await redis_client.delete(key)
