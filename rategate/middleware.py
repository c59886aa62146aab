"""
Admission middleware for Starlette / FastAPI applications.

Gates every incoming request through a ``DecisionDispatcher`` and turns
denials into HTTP responses carrying standard rate limit headers.
"""

import logging
from typing import Callable, Dict, Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .dispatcher import DecisionDispatcher
from .models import DecisionReason, RateLimitResult
from .utils import retry_after_seconds

logger = logging.getLogger(__name__)

DENIAL_STATUS_CODES = {
    DecisionReason.API_KEY_INVALID_OR_INACTIVE: 401,
    DecisionReason.NO_MATCHING_POLICY: 403,
    DecisionReason.LIMIT_EXCEEDED: 429,
    DecisionReason.INTERNAL_ERROR: 503,
}


def decision_headers(result: RateLimitResult) -> Dict[str, str]:
    """
    Rate limit headers for a decision.

    - X-RateLimit-Remaining: approximate remaining capacity, when known
    - Retry-After: whole seconds to wait, rounded up, when denied with a hint

    Examples:
        >>> decision_headers(RateLimitResult.deny(
        ...     DecisionReason.LIMIT_EXCEEDED, retry_after_ms=1500, remaining=0
        ... ))
        {'X-RateLimit-Remaining': '0', 'Retry-After': '2'}
    """
    headers: Dict[str, str] = {}
    if result.remaining is not None:
        headers["X-RateLimit-Remaining"] = str(result.remaining)
    if not result.allowed and result.retry_after_ms is not None:
        headers["Retry-After"] = str(retry_after_seconds(result.retry_after_ms))
    return headers


class AdmissionMiddleware(BaseHTTPMiddleware):
    """
    Middleware that admits or rejects requests before they reach a route.

    The API key is read from a header and the request path is used as the
    endpoint. Denials are answered directly:

    - 401 for an invalid or inactive key (or a missing header)
    - 403 when no policy covers the path
    - 429 when the limit is exceeded, with Retry-After
    - 503 when the decision failed internally

    Usage:
        from fastapi import FastAPI
        from rategate import DecisionDispatcher, InMemoryStore
        from rategate.middleware import AdmissionMiddleware

        app = FastAPI()
        dispatcher = DecisionDispatcher.from_store(store)
        app.add_middleware(AdmissionMiddleware, dispatcher=dispatcher)
    """

    def __init__(
        self,
        app,
        dispatcher: DecisionDispatcher,
        header_name: str = "X-API-Key",
        cost_func: Optional[Callable[[Request], int]] = None,
        exempt_paths: Iterable[str] = (),
    ):
        """
        Initialize the middleware.

        Args:
            app: The ASGI application
            dispatcher: Dispatcher making the decisions
            header_name: Header carrying the API key
            cost_func: Optional function computing a request's cost (default 1)
            exempt_paths: Paths that are never gated (e.g. "/health")
        """
        super().__init__(app)
        self.dispatcher = dispatcher
        self.header_name = header_name
        self.cost_func = cost_func
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Decide, then either forward the request or answer the denial.

        Args:
            request: The incoming request
            call_next: The next middleware or route handler

        Returns:
            The route's response with rate limit headers, or a denial
        """
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        api_key = request.headers.get(self.header_name)
        if not api_key:
            result = RateLimitResult.deny(
                DecisionReason.API_KEY_INVALID_OR_INACTIVE,
                message=f"Missing {self.header_name} header.",
            )
        else:
            cost = self.cost_func(request) if self.cost_func else 1
            result = await self.dispatcher.decide(api_key, request.url.path, cost)

        request.state.rate_limit_result = result
        headers = decision_headers(result)

        if not result.allowed:
            logger.debug(
                f"Rejected {request.method} {request.url.path}: reason={result.reason.value}"
            )
            return JSONResponse(
                status_code=DENIAL_STATUS_CODES[result.reason],
                content=result.model_dump(mode="json"),
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
