"""
Unit tests for utility functions.

These tests do not require Redis and focus on pure Python functionality.
They validate key generation, key hashing, timestamp conversion and retry hints.
"""

from datetime import datetime, timedelta, timezone

import pytest

from rategate.utils import (
    EPOCH,
    _url_encode_key_component,
    from_epoch_ms,
    generate_key,
    hash_key,
    retry_after_seconds,
    to_epoch_ms,
)


class TestGenerateKey:
    """Test suite for generate_key() function."""

    def test_basic_key(self):
        assert generate_key("rategate", "apikey", "abc") == "rategate:apikey:abc"

    def test_multiple_components(self):
        key = generate_key("rategate", "usage", "42", "/api/orders")
        assert key == "rategate:usage:42:%2Fapi%2Forders"

    def test_colons_cannot_collide(self):
        """Endpoints containing colons must not alias another key id."""
        assert generate_key("p", "usage", "a:b", "c") != generate_key("p", "usage", "a", "b:c")

    def test_long_key_is_hashed(self):
        key = generate_key("rategate", "usage", "1", "/" + "x" * 500)
        assert len(key) <= 200
        assert key.startswith("rategate:usage:1:")


class TestUrlEncodeKeyComponent:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("simple", "simple"),
            ("user:123", "user%3A123"),
            ("/api/orders", "%2Fapi%2Forders"),
            ("a b", "a%20b"),
            ("safe-_.~", "safe-_.~"),
        ],
    )
    def test_encoding(self, value, expected):
        assert _url_encode_key_component(value) == expected


class TestHashKey:
    def test_short_key_unchanged(self):
        assert hash_key("rategate:apikey:abc") == "rategate:apikey:abc"

    def test_long_key_deterministic(self):
        long_key = "rategate:" + "y" * 400
        assert hash_key(long_key) == hash_key(long_key)
        assert len(hash_key(long_key)) == 200

    def test_distinct_long_keys_differ(self):
        assert hash_key("k:" + "a" * 300) != hash_key("k:" + "a" * 299 + "b")


class TestEpochMillis:
    def test_epoch_is_zero(self):
        assert to_epoch_ms(EPOCH) == 0

    def test_drops_sub_millisecond(self):
        when = datetime(2024, 1, 1, 0, 0, 0, 999, tzinfo=timezone.utc)
        assert to_epoch_ms(when) == to_epoch_ms(datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_round_up_moves_to_next_millisecond(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert to_epoch_ms(start + timedelta(microseconds=1), round_up=True) == (
            to_epoch_ms(start) + 1
        )
        assert to_epoch_ms(start + timedelta(microseconds=999), round_up=True) == (
            to_epoch_ms(start) + 1
        )

    def test_round_up_keeps_exact_millisecond(self):
        when = datetime(2024, 1, 1, 0, 0, 0, 5000, tzinfo=timezone.utc)
        assert to_epoch_ms(when, round_up=True) == to_epoch_ms(when)

    def test_round_up_before_epoch(self):
        when = EPOCH - timedelta(microseconds=500)
        assert to_epoch_ms(when) == -1
        assert to_epoch_ms(when, round_up=True) == 0

    def test_naive_taken_as_utc(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)
        aware = naive.replace(tzinfo=timezone.utc)
        assert to_epoch_ms(naive) == to_epoch_ms(aware)

    def test_inverse(self):
        when = datetime(2024, 5, 17, 8, 30, 15, 250_000, tzinfo=timezone.utc)
        assert from_epoch_ms(to_epoch_ms(when)) == when

    def test_millisecond_steps(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert to_epoch_ms(start + timedelta(milliseconds=1500)) - to_epoch_ms(start) == 1500


class TestRetryAfterSeconds:
    @pytest.mark.parametrize(
        "ms,seconds",
        [(0, 0), (1, 1), (999, 1), (1000, 1), (1001, 2), (60_000, 60)],
    )
    def test_rounds_up(self, ms, seconds):
        assert retry_after_seconds(ms) == seconds

    def test_none(self):
        assert retry_after_seconds(None) is None
