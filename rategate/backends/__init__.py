"""
Collaborator implementations for identities, policies and the usage log.
"""

from .base import IdentityResolver, PolicySource, UsageLogStore
from .memory import InMemoryStore
from .redis import RedisStore

__all__ = ["IdentityResolver", "PolicySource", "UsageLogStore", "InMemoryStore", "RedisStore"]
