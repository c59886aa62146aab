"""
Redis implementation of the engine's collaborators.
"""

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import NoScriptError

from ..exceptions import BackendError
from ..metrics import GateMetrics
from ..models import ApiKeyRecord, GateConfig, Policy, WindowAdmission
from ..utils import from_epoch_ms, generate_key, to_epoch_ms
from .base import IdentityResolver, PolicySource, UsageLogStore

logger = logging.getLogger(__name__)


class RedisStore(IdentityResolver, PolicySource, UsageLogStore):
    """
    Redis store for API keys, policies and the sliding-window usage log.

    Layout:
        <prefix>:apikey:<key>             hash {id, owner_id, is_active}
        <prefix>:policies:<owner>         list of JSON policies, registration order
        <prefix>:usage:<key_id>:<endpoint> sorted set, score = occurred_at (ms),
                                           member = "<ms>:<cost>:<nonce>"

    The atomic check-and-append runs as a Lua script so the window sum and
    the insert cannot interleave with another check.
    """

    def __init__(self, config: Optional[GateConfig] = None, metrics: Optional[GateMetrics] = None):
        """
        Initialize Redis store.

        Args:
            config: Gate configuration (Redis URL, prefix, timeouts, retention)
            metrics: Optional metrics collector for store operations
        """
        self.config = config or GateConfig()
        self.metrics = metrics
        self._redis: Optional[redis.Redis] = None
        self._scripts: Dict[str, str] = {}
        self._script_shas: Dict[str, str] = {}
        self._connected = False
        self._load_scripts()

    def _load_scripts(self) -> None:
        """Load Lua scripts shipped with the package."""
        script_dir = Path(__file__).parent.parent / "scripts"

        sliding_window_path = script_dir / "sliding_window_log.lua"
        if sliding_window_path.exists():
            with open(sliding_window_path, "r") as f:
                self._scripts["sliding_window_log"] = f.read()
        else:
            logger.warning("sliding_window_log.lua not found, atomic append disabled")

        logger.debug(f"Loaded {len(self._scripts)} Lua scripts")

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """
        Initialize Redis connection and load scripts.

        Raises:
            BackendError: If connection fails
        """
        if self._connected:
            logger.debug("Already connected to Redis")
            return

        try:
            self._redis = redis.from_url(
                self.config.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.config.connection_timeout,
                socket_timeout=self.config.socket_timeout,
                max_connections=self.config.max_connections,
            )

            await self._redis.ping()
            await self._register_scripts()

            self._connected = True
            logger.info(f"Connected to Redis at {self.config.redis_url}")

        except redis.ConnectionError as e:
            raise BackendError(f"Failed to connect to Redis: {e}")
        except Exception as e:
            raise BackendError(f"Unexpected error during Redis connection: {e}")

    async def _register_scripts(self) -> None:
        """Register Lua scripts with Redis so they can be run with EVALSHA."""
        if not self._redis:
            return

        for name, script in self._scripts.items():
            try:
                sha = await self._redis.script_load(script)
                self._script_shas[name] = sha
                logger.debug(f"Registered script '{name}' with SHA: {sha}")
            except Exception as e:
                logger.warning(f"Failed to register script '{name}': {e}")
                # Script will be executed with EVAL instead of EVALSHA

    async def close(self) -> None:
        """Close Redis connection gracefully."""
        if self._redis and self._connected:
            await self._redis.aclose()
            self._connected = False
            logger.info("Closed Redis connection")

    async def __aenter__(self) -> "RedisStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _client(self) -> redis.Redis:
        if not self._redis or not self._connected:
            raise BackendError("Redis not connected. Call connect() first.")
        return self._redis

    def _key(self, kind: str, *components: str) -> str:
        return generate_key(self.config.key_prefix, kind, *components)

    def _usage_key(self, key_id: str, endpoint: str) -> str:
        return self._key("usage", key_id, endpoint)

    async def _run(self, operation: str, coro: Any) -> Any:
        """Await a Redis call, recording metrics and wrapping Redis errors."""
        try:
            if self.metrics is not None:
                with self.metrics.track_store_operation(operation):
                    return await coro
            return await coro
        except redis.RedisError as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise BackendError(f"{operation} failed: {e}")

    # Seeding helpers (administration is owned elsewhere)

    async def add_api_key(
        self,
        key: str,
        owner_id: str,
        is_active: bool = True,
        key_id: Optional[str] = None,
    ) -> ApiKeyRecord:
        record = ApiKeyRecord(
            id=key_id or uuid.uuid4().hex,
            key=key,
            owner_id=owner_id,
            is_active=is_active,
        )
        await self._run(
            "add_api_key",
            self._client().hset(
                self._key("apikey", key),
                mapping={
                    "id": record.id,
                    "owner_id": record.owner_id,
                    "is_active": "1" if record.is_active else "0",
                },
            ),
        )
        return record

    async def set_key_active(self, key: str, is_active: bool) -> None:
        await self._run(
            "set_key_active",
            self._client().hset(self._key("apikey", key), "is_active", "1" if is_active else "0"),
        )

    async def add_policy(self, policy: Policy) -> None:
        await self._run(
            "add_policy",
            self._client().rpush(self._key("policies", policy.owner_id), policy.model_dump_json()),
        )

    # IdentityResolver

    async def resolve_key(self, raw_key: str) -> Optional[ApiKeyRecord]:
        data = await self._run("resolve_key", self._client().hgetall(self._key("apikey", raw_key)))
        if not data:
            return None
        return ApiKeyRecord(
            id=data["id"],
            key=raw_key,
            owner_id=data["owner_id"],
            is_active=data.get("is_active") == "1",
        )

    # PolicySource

    async def policies_for(self, owner_id: str) -> List[Policy]:
        raw = await self._run(
            "policies_for", self._client().lrange(self._key("policies", owner_id), 0, -1)
        )
        return [Policy(**json.loads(item)) for item in raw]

    # UsageLogStore

    async def sum_cost(
        self, key_id: str, endpoint: str, window_start: datetime, now: datetime
    ) -> int:
        members = await self._run(
            "sum_cost",
            self._client().zrangebyscore(
                self._usage_key(key_id, endpoint),
                to_epoch_ms(window_start, round_up=True),
                to_epoch_ms(now),
            ),
        )
        return sum(_member_cost(m) for m in members)

    async def oldest_in_window(
        self, key_id: str, endpoint: str, window_start: datetime
    ) -> Optional[datetime]:
        oldest = await self._run(
            "oldest_in_window",
            self._client().zrangebyscore(
                self._usage_key(key_id, endpoint),
                to_epoch_ms(window_start, round_up=True),
                "+inf",
                start=0,
                num=1,
                withscores=True,
            ),
        )
        if not oldest:
            return None
        _, score = oldest[0]
        return from_epoch_ms(int(score))

    async def append(
        self,
        key_id: str,
        endpoint: str,
        occurred_at: datetime,
        cost: int,
        window_start: Optional[datetime] = None,
    ) -> None:
        key = self._usage_key(key_id, endpoint)
        now_ms = to_epoch_ms(occurred_at)
        retention_ms = self.config.usage_retention_seconds * 1000
        trim_below = now_ms - retention_ms
        ttl_ms = retention_ms
        if window_start is not None:
            # Never drop or expire entries the window still needs
            window_start_ms = to_epoch_ms(window_start, round_up=True)
            trim_below = min(trim_below, window_start_ms)
            ttl_ms = max(ttl_ms, now_ms - window_start_ms)

        pipe = self._client().pipeline(transaction=True)
        pipe.zadd(key, {_member(now_ms, cost): now_ms})
        pipe.zremrangebyscore(key, "-inf", f"({trim_below}")
        pipe.pexpire(key, ttl_ms)
        await self._run("append", pipe.execute())

    async def append_if_within_limit(
        self,
        key_id: str,
        endpoint: str,
        window_start: datetime,
        occurred_at: datetime,
        cost: int,
        limit: int,
    ) -> WindowAdmission:
        if "sliding_window_log" not in self._scripts:
            raise BackendError("Sliding window log script not loaded")

        now_ms = to_epoch_ms(occurred_at)
        keys = [self._usage_key(key_id, endpoint)]
        args = [
            to_epoch_ms(window_start, round_up=True),
            now_ms,
            cost,
            limit,
            _member(now_ms, cost),
            self.config.usage_retention_seconds * 1000,
        ]

        result = await self._run("append_if_within_limit", self._execute_script(keys, args))

        if not isinstance(result, list) or len(result) != 3:
            raise BackendError(f"Invalid script result: {result}")

        admitted = bool(int(result[0]))
        used = int(result[1])
        oldest_ms = int(result[2])

        return WindowAdmission(
            admitted=admitted,
            used=used,
            oldest_at=from_epoch_ms(oldest_ms) if oldest_ms >= 0 else None,
        )

    async def _execute_script(self, keys: List[str], args: List[Any]) -> Any:
        """Run the sliding window script, preferring EVALSHA over EVAL."""
        client = self._client()
        sha = self._script_shas.get("sliding_window_log")
        if sha:
            try:
                return await client.evalsha(sha, len(keys), *keys, *args)
            except NoScriptError:
                # Script not in cache (e.g. after SCRIPT FLUSH), fall back to EVAL
                logger.debug("Script not in cache, using EVAL")
        return await client.eval(self._scripts["sliding_window_log"], len(keys), *keys, *args)

    async def health_check(self) -> bool:
        """
        Check if Redis connection is healthy.

        Returns:
            True if healthy, False otherwise
        """
        if not self._redis or not self._connected:
            return False

        try:
            await self._redis.ping()
            return True
        except redis.RedisError:
            return False


def _member(occurred_ms: int, cost: int) -> str:
    # Nonce keeps two entries with the same timestamp and cost distinct
    return f"{occurred_ms}:{cost}:{uuid.uuid4().hex[:12]}"


def _member_cost(member: str) -> int:
    return int(member.split(":")[1])
