"""
Base class for rate limiting algorithms.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from ..models import Algorithm, RateLimitRequest, RateLimitResult


class RateLimitAlgorithm(ABC):
    """
    Abstract base class for rate limiting algorithms.

    Implementations never raise for an admission outcome: every decision,
    including a failure of their own collaborators, comes back as a
    ``RateLimitResult``. The one exception is cancellation, which propagates
    as ``asyncio.CancelledError``.
    """

    algorithm: Algorithm

    @abstractmethod
    async def check(
        self, request: RateLimitRequest, cancel: Optional[asyncio.Event] = None
    ) -> RateLimitResult:
        """
        Decide whether a request is admitted.

        Args:
            request: Validated request carrying the policy's limit and window
            cancel: Optional cancellation signal, honored before each I/O step

        Returns:
            RateLimitResult with the decision and its metadata
        """
        pass


def raise_if_cancelled(cancel: Optional[asyncio.Event]) -> None:
    """Abort the current check if the caller has signalled cancellation."""
    if cancel is not None and cancel.is_set():
        raise asyncio.CancelledError("Rate limit check cancelled by caller")
