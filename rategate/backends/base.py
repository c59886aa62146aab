"""
Collaborator interfaces consumed by the decision engine.

The engine never owns identities, policies or the usage log; it only talks
to them through these contracts.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..models import ApiKeyRecord, Policy, WindowAdmission


class IdentityResolver(ABC):
    """Resolves a presented API key to its internal principal."""

    @abstractmethod
    async def resolve_key(self, raw_key: str) -> Optional[ApiKeyRecord]:
        """
        Look up an API key.

        Args:
            raw_key: Key exactly as presented by the caller

        Returns:
            The key record (active or not), or None if the key is unknown
        """
        pass


class PolicySource(ABC):
    """Supplies the policies of a tenant."""

    @abstractmethod
    async def policies_for(self, owner_id: str) -> List[Policy]:
        """Return the owner's policies in registration order."""
        pass


class UsageLogStore(ABC):
    """Append and query access to the sliding-window usage log."""

    @abstractmethod
    async def sum_cost(
        self, key_id: str, endpoint: str, window_start: datetime, now: datetime
    ) -> int:
        """Total cost of entries with window_start <= occurred_at <= now (0 if none)."""
        pass

    @abstractmethod
    async def oldest_in_window(
        self, key_id: str, endpoint: str, window_start: datetime
    ) -> Optional[datetime]:
        """Timestamp of the oldest entry with occurred_at >= window_start, if any."""
        pass

    @abstractmethod
    async def append(
        self,
        key_id: str,
        endpoint: str,
        occurred_at: datetime,
        cost: int,
        window_start: Optional[datetime] = None,
    ) -> None:
        """
        Record an admitted request.

        Entries at or after ``window_start`` must be kept; stores may drop
        anything older.

        Raises:
            BackendError: If the entry could not be stored
        """
        pass

    @abstractmethod
    async def append_if_within_limit(
        self,
        key_id: str,
        endpoint: str,
        window_start: datetime,
        occurred_at: datetime,
        cost: int,
        limit: int,
    ) -> WindowAdmission:
        """
        Atomically sum the window and append only if the new total fits.

        Args:
            key_id: Internal API key id
            endpoint: Endpoint being called
            window_start: Start of the trailing window
            occurred_at: Timestamp for the new entry
            cost: Cost of the new entry
            limit: Maximum total cost allowed in the window

        Returns:
            WindowAdmission; ``used`` is the window total before this request
            and ``oldest_at`` is set when the entry was not admitted
        """
        pass
