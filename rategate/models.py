"""
Pydantic models for configuration and the decision contract.
"""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigError


class Algorithm(str, Enum):
    """Rate limiting algorithms a policy can select."""

    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW_LOG = "sliding_window_log"


class DecisionReason(str, Enum):
    """Why a decision was made. Every denial carries one of these."""

    ALLOWED = "allowed"
    API_KEY_INVALID_OR_INACTIVE = "api_key_invalid_or_inactive"
    NO_MATCHING_POLICY = "no_matching_policy"
    LIMIT_EXCEEDED = "limit_exceeded"
    INTERNAL_ERROR = "internal_error"


class RateLimitRequest(BaseModel):
    """
    A single admission check, already resolved against a policy.

    Built once per call and never mutated. Invalid fields are rejected
    here, so an algorithm only ever sees a well-formed request.

    Examples:
        >>> req = RateLimitRequest(
        ...     identity="key-123", endpoint="/api/orders", limit=100, window_seconds=60
        ... )
        >>> req.bucket_key
        'key-123:/api/orders'
    """

    model_config = ConfigDict(frozen=True)

    identity: str = Field(description="Caller credential (API key) as presented")
    endpoint: str = Field(description="Target endpoint, e.g. /api/orders")
    cost: int = Field(default=1, gt=0, description="Units consumed by this call")
    limit: int = Field(gt=0, description="Maximum units per window")
    window_seconds: int = Field(gt=0, description="Window length in seconds")
    burst_limit: Optional[int] = Field(
        default=None,
        gt=0,
        description="Reserved burst allowance; carried but not consumed by any algorithm",
    )

    @field_validator("identity", "endpoint")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only identity and endpoint."""
        if not v or not v.strip():
            raise ValueError("Value must be a non-empty string")
        return v

    @property
    def bucket_key(self) -> str:
        """Key of the in-memory token bucket for this identity and endpoint."""
        return f"{self.identity}:{self.endpoint}"


class RateLimitResult(BaseModel):
    """
    Outcome of an admission check.

    ``allowed``, ``reason``, ``retry_after_ms``, ``remaining`` and ``message``
    are the stable contract any transport must surface unchanged.
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: DecisionReason
    retry_after_ms: Optional[int] = Field(default=None, ge=0)
    remaining: Optional[int] = None
    message: Optional[str] = None

    @model_validator(mode="after")
    def validate_consistency(self) -> "RateLimitResult":
        if self.allowed != (self.reason is DecisionReason.ALLOWED):
            raise ValueError("allowed must be True exactly when reason is 'allowed'")
        if self.allowed and self.retry_after_ms is not None:
            raise ValueError("Allowed results carry no retry_after_ms")
        return self

    @classmethod
    def allow(
        cls, remaining: Optional[int] = None, message: Optional[str] = None
    ) -> "RateLimitResult":
        return cls(
            allowed=True,
            reason=DecisionReason.ALLOWED,
            remaining=remaining,
            message=message,
        )

    @classmethod
    def deny(
        cls,
        reason: DecisionReason,
        retry_after_ms: Optional[int] = None,
        remaining: Optional[int] = None,
        message: Optional[str] = None,
    ) -> "RateLimitResult":
        return cls(
            allowed=False,
            reason=reason,
            retry_after_ms=retry_after_ms,
            remaining=remaining,
            message=message,
        )


class Policy(BaseModel):
    """
    Per-tenant rule binding an endpoint pattern to an algorithm.

    Owned by the administration side; the engine only reads it. ``algorithm``
    is kept as the raw tag so that a tag the engine does not know reaches the
    dispatcher instead of failing at load time.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    owner_id: str
    endpoint_pattern: str
    algorithm: str = Algorithm.TOKEN_BUCKET.value
    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)
    burst_limit: Optional[int] = Field(default=None, gt=0)

    @field_validator("algorithm", mode="before")
    @classmethod
    def normalize_algorithm(cls, v: Any) -> Any:
        if isinstance(v, Enum):
            return v.value
        return v


class ApiKeyRecord(BaseModel):
    """A presented API key resolved to its internal principal."""

    model_config = ConfigDict(frozen=True)

    id: str
    key: str
    owner_id: str
    is_active: bool = True


class UsageLogEntry(BaseModel):
    """One admitted request recorded in the sliding-window log."""

    model_config = ConfigDict(frozen=True)

    key_id: str
    endpoint: str
    occurred_at: datetime
    cost: int = Field(gt=0)


class WindowAdmission(NamedTuple):
    """Result of an atomic check-and-append against the usage log."""

    admitted: bool  # Whether the entry was appended
    used: int  # Cost already in the window before this request
    oldest_at: Optional[datetime] = None  # Oldest in-window entry, when denied


class GateConfig(BaseModel):
    """Configuration model for the decision engine and its stores."""

    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL (redis://[user:password@]host[:port][/db])",
    )
    key_prefix: str = Field(
        default="rategate",
        description="Prefix for all keys written to Redis",
    )
    connection_timeout: int = Field(
        default=5,
        description="Redis connection timeout in seconds",
    )
    socket_timeout: int = Field(
        default=5,
        description="Redis socket timeout in seconds",
    )
    max_connections: int = Field(
        default=50,
        description="Maximum number of Redis connections in the pool",
    )
    sliding_window_atomic: bool = Field(
        default=True,
        description="Check and append sliding-window entries in one atomic step",
    )
    bucket_idle_ttl_seconds: Optional[int] = Field(
        default=None,
        description="Evict token buckets idle for longer than this (None keeps them forever)",
    )
    bucket_sweep_interval_seconds: int = Field(
        default=60,
        description="Minimum time between two idle-bucket sweeps",
    )
    usage_retention_seconds: int = Field(
        default=86400,
        description="Usage log entries older than this and before the window start are trimmed",
    )
    enable_metrics: bool = Field(
        default=True,
        description="Enable Prometheus metrics collection",
    )
    metrics_namespace: str = Field(
        default="rategate",
        description="Prometheus namespace for all metrics",
    )

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Basic validation of Redis URL format."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL must start with redis://, rediss://, or unix://")
        return v

    @field_validator(
        "connection_timeout",
        "socket_timeout",
        "max_connections",
        "bucket_sweep_interval_seconds",
        "usage_retention_seconds",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate that timeout, connection and interval values are positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("bucket_idle_ttl_seconds")
    @classmethod
    def validate_idle_ttl(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("Idle TTL must be positive when set")
        return v

    model_config = ConfigDict(validate_assignment=True)

    @classmethod
    def from_env(cls, prefix: str = "RATEGATE_", **overrides: Any) -> "GateConfig":
        """
        Build a config from environment variables.

        Every field can be set as ``<prefix><FIELD_NAME>`` (upper case), e.g.
        ``RATEGATE_REDIS_URL``. Explicit keyword overrides win over the
        environment.

        Raises:
            ConfigError: If a value is invalid
        """
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}")
