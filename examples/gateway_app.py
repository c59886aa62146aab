"""
Example FastAPI application gated by RateGate.

Uses the in-memory store so it runs without Redis. Two tenants are seeded:
one on a token bucket, one on a sliding window log.

Run with:
    uvicorn examples.gateway_app:app --reload --port 8000

Try:
    curl -H "X-API-Key: demo-tb" localhost:8000/api/orders
    curl -H "X-API-Key: demo-sw" localhost:8000/api/reports
"""

import logging

from fastapi import FastAPI, Request

from rategate import DecisionDispatcher, GateMetrics, InMemoryStore, Policy
from rategate.api import create_app
from rategate.middleware import AdmissionMiddleware

logging.basicConfig(level=logging.INFO)

store = InMemoryStore()
store.add_api_key("demo-tb", owner_id="tenant-tb")
store.add_api_key("demo-sw", owner_id="tenant-sw")
store.add_api_key("demo-disabled", owner_id="tenant-tb", is_active=False)

store.add_policy(Policy(
    name="orders burst", owner_id="tenant-tb", endpoint_pattern="/api/*",
    algorithm="token_bucket", limit=5, window_seconds=10,
))
store.add_policy(Policy(
    name="reports", owner_id="tenant-sw", endpoint_pattern="/api/reports",
    algorithm="sliding_window_log", limit=3, window_seconds=30,
))

metrics = GateMetrics(namespace="gateway_demo")
dispatcher = DecisionDispatcher.from_store(store, metrics=metrics)

# Decision service: POST /check, /health, /metrics
decision_app = create_app(dispatcher, metrics=metrics)

app = FastAPI(
    title="RateGate Demo API",
    description="Demonstration of admission control with RateGate",
    version="0.1.0",
)
app.add_middleware(
    AdmissionMiddleware,
    dispatcher=dispatcher,
    cost_func=lambda request: 3 if request.url.path.endswith("/export") else 1,
    exempt_paths=["/", "/docs", "/openapi.json", "/gate/check", "/gate/health", "/gate/metrics"],
)
app.mount("/gate", decision_app)


@app.get("/")
async def root():
    """Root endpoint - not gated."""
    return {
        "message": "Welcome to the RateGate Demo API",
        "keys": ["demo-tb", "demo-sw", "demo-disabled"],
        "decision_service": "/gate/check",
    }


@app.get("/api/orders")
async def orders(request: Request):
    """5 requests per 10 seconds for tenant-tb, refilled continuously."""
    result = request.state.rate_limit_result
    return {"orders": [], "remaining": result.remaining}


@app.get("/api/orders/export")
async def export_orders():
    """Costs 3 tokens per call."""
    return {"export": "started"}


@app.get("/api/reports")
async def reports():
    """3 requests per 30 seconds for tenant-sw; tenant-tb falls under its /api/* bucket."""
    return {"reports": []}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
