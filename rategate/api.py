"""
HTTP surface for the decision service.

Run with:
    uvicorn rategate.api:create_default_app --factory --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from .backends.redis import RedisStore
from .dispatcher import DecisionDispatcher
from .metrics import GateMetrics
from .models import DecisionReason, GateConfig, RateLimitResult

logger = logging.getLogger(__name__)

SERVICE_NAME = "rategate"


class CheckRequest(BaseModel):
    """Body of POST /check."""

    api_key: str = Field(min_length=1, description="API key presented by the caller")
    endpoint: str = Field(min_length=1, description="Endpoint the caller wants to reach")
    cost: Optional[int] = Field(default=None, ge=1, description="Units consumed (default 1)")


def create_app(
    dispatcher: DecisionDispatcher,
    metrics: Optional[GateMetrics] = None,
    store: Optional[RedisStore] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        dispatcher: Dispatcher answering /check
        metrics: Collector exposed on /metrics (endpoint omitted when None)
        store: Redis store to connect on startup, close on shutdown and
               checked by /health

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if store is not None:
            await store.connect()
        yield
        if store is not None:
            await store.close()

    app = FastAPI(
        title="RateGate",
        description="Admission-control decision service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.dispatcher = dispatcher

    @app.post("/check", response_model=RateLimitResult)
    async def check(body: CheckRequest):
        """Decide whether a call is admitted."""
        result = await dispatcher.decide(body.api_key, body.endpoint, body.cost or 1)
        status_code = 500 if result.reason is DecisionReason.INTERNAL_ERROR else 200
        return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))

    @app.get("/health")
    async def health():
        """Liveness, plus Redis reachability when a store is attached."""
        if store is not None and not await store.health_check():
            return JSONResponse(
                status_code=503,
                content={"status": "degraded", "service": SERVICE_NAME},
            )
        return {"status": "ok", "service": SERVICE_NAME}

    if metrics is not None:

        @app.get("/metrics")
        async def metrics_endpoint():
            return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app


def create_default_app(config: Optional[GateConfig] = None) -> FastAPI:
    """
    Redis-backed app configured from the environment (``RATEGATE_*``).
    """
    config = config or GateConfig.from_env()
    metrics = GateMetrics(namespace=config.metrics_namespace, enabled=config.enable_metrics)
    store = RedisStore(config, metrics=metrics)
    dispatcher = DecisionDispatcher.from_store(store, config=config, metrics=metrics)
    logger.info(f"Created RateGate app (redis={config.redis_url})")
    return create_app(dispatcher, metrics=metrics, store=store)
