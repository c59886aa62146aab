"""
In-process implementations of the engine's collaborators.

Useful for single-node deployments, demos and tests. All state is lost when
the process exits.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..models import ApiKeyRecord, Policy, UsageLogEntry, WindowAdmission
from .base import IdentityResolver, PolicySource, UsageLogStore

logger = logging.getLogger(__name__)


class InMemoryStore(IdentityResolver, PolicySource, UsageLogStore):
    """
    API keys, policies and the usage log held in dictionaries.

    Every operation awaits ``asyncio.sleep(latency)`` first, so concurrent
    checks interleave at each call the way they would against a real
    database. Past that await each operation runs without suspending, which
    makes ``append_if_within_limit`` atomic on the event loop.

    Appends drop entries older than the window they were checked against,
    so the log for a key holds at most one window of history.

    Examples:
        >>> store = InMemoryStore()
        >>> record = store.add_api_key("key-123", owner_id="tenant-1")
        >>> store.add_policy(Policy(
        ...     name="default", owner_id="tenant-1", endpoint_pattern="*",
        ...     limit=100, window_seconds=60,
        ... ))
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._keys: Dict[str, ApiKeyRecord] = {}
        self._policies: Dict[str, List[Policy]] = defaultdict(list)
        self._log: Dict[Tuple[str, str], List[UsageLogEntry]] = defaultdict(list)

    # Seeding helpers (administration is owned elsewhere)

    def add_api_key(
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
        self._keys[key] = record
        return record

    def set_key_active(self, key: str, is_active: bool) -> None:
        record = self._keys[key]
        self._keys[key] = record.model_copy(update={"is_active": is_active})

    def add_policy(self, policy: Policy) -> None:
        self._policies[policy.owner_id].append(policy)

    def entries(self, key_id: str, endpoint: str) -> List[UsageLogEntry]:
        return list(self._log.get((key_id, endpoint), []))

    def purge_older_than(self, cutoff: datetime) -> int:
        """Drop log entries older than ``cutoff``. Returns how many were removed."""
        removed = 0
        for log_key in list(self._log):
            removed += self._trim(log_key, cutoff)
        return removed

    # IdentityResolver

    async def resolve_key(self, raw_key: str) -> Optional[ApiKeyRecord]:
        await asyncio.sleep(self.latency)
        return self._keys.get(raw_key)

    # PolicySource

    async def policies_for(self, owner_id: str) -> List[Policy]:
        await asyncio.sleep(self.latency)
        return list(self._policies.get(owner_id, []))

    # UsageLogStore

    async def sum_cost(
        self, key_id: str, endpoint: str, window_start: datetime, now: datetime
    ) -> int:
        await asyncio.sleep(self.latency)
        return self._sum(key_id, endpoint, window_start, now)

    async def oldest_in_window(
        self, key_id: str, endpoint: str, window_start: datetime
    ) -> Optional[datetime]:
        await asyncio.sleep(self.latency)
        return self._oldest(key_id, endpoint, window_start)

    async def append(
        self,
        key_id: str,
        endpoint: str,
        occurred_at: datetime,
        cost: int,
        window_start: Optional[datetime] = None,
    ) -> None:
        await asyncio.sleep(self.latency)
        if window_start is not None:
            self._trim((key_id, endpoint), window_start)
        self._append(key_id, endpoint, occurred_at, cost)

    async def append_if_within_limit(
        self,
        key_id: str,
        endpoint: str,
        window_start: datetime,
        occurred_at: datetime,
        cost: int,
        limit: int,
    ) -> WindowAdmission:
        await asyncio.sleep(self.latency)
        # No await from here on: the sum and the append cannot interleave
        self._trim((key_id, endpoint), window_start)
        used = self._sum(key_id, endpoint, window_start, occurred_at)
        if used + cost > limit:
            return WindowAdmission(
                admitted=False,
                used=used,
                oldest_at=self._oldest(key_id, endpoint, window_start),
            )
        self._append(key_id, endpoint, occurred_at, cost)
        return WindowAdmission(admitted=True, used=used)

    def _sum(self, key_id: str, endpoint: str, window_start: datetime, now: datetime) -> int:
        return sum(
            e.cost
            for e in self._log.get((key_id, endpoint), [])
            if window_start <= e.occurred_at <= now
        )

    def _oldest(self, key_id: str, endpoint: str, window_start: datetime) -> Optional[datetime]:
        in_window = [
            e.occurred_at
            for e in self._log.get((key_id, endpoint), [])
            if e.occurred_at >= window_start
        ]
        return min(in_window) if in_window else None

    def _trim(self, log_key: Tuple[str, str], cutoff: datetime) -> int:
        entries = self._log.get(log_key)
        if entries is None:
            return 0
        kept = [e for e in entries if e.occurred_at >= cutoff]
        if kept:
            self._log[log_key] = kept
        else:
            del self._log[log_key]
        return len(entries) - len(kept)

    def _append(self, key_id: str, endpoint: str, occurred_at: datetime, cost: int) -> None:
        entry = UsageLogEntry(key_id=key_id, endpoint=endpoint, occurred_at=occurred_at, cost=cost)
        self._log[(key_id, endpoint)].append(entry)
