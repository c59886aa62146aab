"""
Rate limiting algorithms module.

Exactly two algorithms satisfy the ``RateLimitAlgorithm.check`` contract:

- ``TokenBucket`` - in-process, continuously refilling bucket per identity and endpoint
- ``SlidingWindowLog`` - persisted event log summed over a trailing window
"""

from .base import RateLimitAlgorithm, raise_if_cancelled
from .sliding_window import SlidingWindowLog
from .token_bucket import TokenBucket

__all__ = ["RateLimitAlgorithm", "TokenBucket", "SlidingWindowLog", "raise_if_cancelled"]
