"""
Exception classes for the RateGate admission-control engine.

These never cross the engine boundary: algorithms and the dispatcher turn
them into denial results. They are raised by collaborators and configuration.
"""


class RateGateError(Exception):
    """Base exception for all RateGate errors."""

    pass


class ConfigError(RateGateError):
    """Raised when gate configuration is invalid."""

    pass


class BackendError(RateGateError):
    """Raised when a storage collaborator fails (e.g., Redis connection issues)."""

    pass
