"""
Policy matching: pick the rule that governs an endpoint.
"""

import logging
from typing import Iterable, Optional

from .models import Policy

logger = logging.getLogger(__name__)

WILDCARD = "*"
PREFIX_SUFFIX = "/*"


def match_policy(policies: Iterable[Policy], endpoint: str) -> Optional[Policy]:
    """
    Select the single policy that applies to an endpoint.

    Patterns come in three kinds, in order of precedence:

    - exact:    ``/api/orders`` matches only ``/api/orders``
    - prefix:   ``/api/*`` matches anything starting with ``/api/``
    - wildcard: ``*`` matches everything

    Comparison is case-insensitive. Within a kind, the policy registered
    first wins; later matches of the same kind never replace it.

    Args:
        policies: The tenant's policies, in registration order
        endpoint: Endpoint being called

    Returns:
        The applicable policy, or None if no pattern matches

    Examples:
        >>> p = lambda pattern: Policy(
        ...     name=pattern, owner_id="t1", endpoint_pattern=pattern,
        ...     limit=10, window_seconds=60,
        ... )
        >>> policies = [p("*"), p("/a/*"), p("/a/b")]
        >>> match_policy(policies, "/a/b").endpoint_pattern
        '/a/b'
        >>> match_policy(policies, "/a/x").endpoint_pattern
        '/a/*'
        >>> match_policy(policies, "/z").endpoint_pattern
        '*'
    """
    exact: Optional[Policy] = None
    prefix: Optional[Policy] = None
    wildcard: Optional[Policy] = None

    endpoint_lower = endpoint.lower()

    for policy in policies:
        pattern = policy.endpoint_pattern

        if pattern == WILDCARD:
            if wildcard is None:
                wildcard = policy
            continue

        if pattern.endswith(PREFIX_SUFFIX):
            # Keep the trailing slash: "/a/*" -> "/a/"
            pattern_prefix = pattern[:-1].lower()
            if prefix is None and endpoint_lower.startswith(pattern_prefix):
                prefix = policy
            continue

        if exact is None and pattern.lower() == endpoint_lower:
            exact = policy

    matched = exact or prefix or wildcard
    if matched is None:
        logger.debug(f"No policy matches endpoint={endpoint}")
    else:
        logger.debug(
            f"Endpoint {endpoint} matched policy '{matched.name}' "
            f"(pattern={matched.endpoint_pattern})"
        )
    return matched
