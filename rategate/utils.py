"""
Utility functions for keys, timestamps and retry hints.
"""

import hashlib
import math
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def generate_key(prefix: str, kind: str, *components: str) -> str:
    """
    Generate a Redis key.

    Components are URL-encoded so that a colon inside an API key or
    endpoint can never make two different keys collide.

    Args:
        prefix: Key prefix (e.g., "rategate")
        kind: Record type (e.g., "apikey", "policies", "usage")
        *components: Identifying parts (e.g., key id, endpoint)

    Returns:
        Formatted Redis key

    Examples:
        >>> generate_key("rategate", "usage", "42", "/api/orders")
        'rategate:usage:42:%2Fapi%2Forders'

        >>> generate_key("rategate", "apikey", "user:123")
        'rategate:apikey:user%3A123'
    """
    safe_parts = [_url_encode_key_component(c) for c in components]
    full_key = ":".join([prefix, kind, *safe_parts])
    return hash_key(full_key, max_length=200)


def _url_encode_key_component(value: str) -> str:
    """
    URL-encode a key component.

    Examples:
        >>> _url_encode_key_component("user:123")
        'user%3A123'

        >>> _url_encode_key_component("normal_key")
        'normal_key'
    """
    return quote(value, safe="-_.~")


def hash_key(key: str, max_length: int = 200) -> str:
    """
    Hash a key if it's too long for Redis.

    Examples:
        >>> short_key = "rategate:apikey:abc"
        >>> hash_key(short_key) == short_key
        True

        >>> long_key = "rategate:" + "x" * 500
        >>> len(hash_key(long_key)) < len(long_key)
        True
    """
    if len(key) <= max_length:
        return key

    key_hash = hashlib.sha256(key.encode()).hexdigest()

    # Preserve some prefix for debugging
    prefix_len = max_length - len(key_hash) - 1
    if prefix_len > 0:
        return f"{key[:prefix_len]}_{key_hash}"

    return key_hash


def to_epoch_ms(when: datetime, round_up: bool = False) -> int:
    """
    Whole milliseconds since the Unix epoch.

    The sub-millisecond part is dropped, or rounded up to the next
    millisecond with ``round_up`` (for inclusive lower bounds). Naive
    datetimes are taken as UTC.

    Examples:
        >>> to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc))
        1000
        >>> to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1, 1, tzinfo=timezone.utc), round_up=True)
        1001
    """
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    ms, rest = divmod(when - EPOCH, timedelta(milliseconds=1))
    if round_up and rest:
        ms += 1
    return ms


def from_epoch_ms(ms: int) -> datetime:
    """Inverse of ``to_epoch_ms``; returns an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=ms)


def retry_after_seconds(retry_after_ms: Optional[int]) -> Optional[int]:
    """
    Convert a millisecond retry hint to whole seconds for a Retry-After header.

    Rounds up so a client never retries too early.

    Examples:
        >>> retry_after_seconds(1)
        1
        >>> retry_after_seconds(2000)
        2
        >>> retry_after_seconds(None) is None
        True
    """
    if retry_after_ms is None:
        return None
    return math.ceil(retry_after_ms / 1000)
