"""
Prometheus metrics support for admission-control observability.

This module collects decision counts, decision latency and store health
for the dispatcher and the Redis store.
"""

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)


class GateMetrics:
    """
    Prometheus metrics collector for admission decisions.

    Tracks:
    - Decisions by algorithm and reason
    - Decision latency
    - Store operation outcomes and latency
    - Number of live token buckets

    Each instance registers into its own ``CollectorRegistry`` unless one is
    passed in, so several gates can live in one process.

    Usage:
        from rategate.metrics import GateMetrics

        metrics = GateMetrics(namespace="rategate")
        dispatcher = DecisionDispatcher(..., metrics=metrics)

        # Expose in your app:
        @app.get("/metrics")
        def metrics_endpoint():
            return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)
    """

    def __init__(
        self,
        namespace: str = "rategate",
        enabled: bool = True,
        registry: Optional[CollectorRegistry] = None,
    ):
        """
        Initialize metrics collector.

        Args:
            namespace: Prometheus namespace for metrics
            enabled: Whether metrics collection is enabled
            registry: Registry to register into (a private one by default)
        """
        self.namespace = namespace
        self.enabled = enabled
        self.registry = registry or CollectorRegistry()

        if not self.enabled:
            logger.info("Metrics disabled by configuration")
            return

        self._init_metrics()
        logger.info(f"Prometheus metrics initialized with namespace '{namespace}'")

    def _init_metrics(self) -> None:
        """Initialize Prometheus metrics."""
        self.decisions_total = Counter(
            f"{self.namespace}_decisions_total",
            "Total number of admission decisions",
            ["algorithm", "reason"],
            registry=self.registry,
        )

        self.decision_duration = Histogram(
            f"{self.namespace}_decision_duration_seconds",
            "Time spent making admission decisions",
            ["algorithm"],
            buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
            registry=self.registry,
        )

        self.store_operations_total = Counter(
            f"{self.namespace}_store_operations_total",
            "Total number of usage store operations",
            ["operation", "status"],  # status: success, error
            registry=self.registry,
        )

        self.store_operation_duration = Histogram(
            f"{self.namespace}_store_operation_duration_seconds",
            "Time spent on usage store operations",
            ["operation"],
            buckets=(0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
            registry=self.registry,
        )

        self.token_buckets = Gauge(
            f"{self.namespace}_token_buckets",
            "Number of token buckets held in memory",
            registry=self.registry,
        )

    @contextmanager
    def track_store_operation(self, operation: str) -> Generator[None, None, None]:
        """
        Context manager to track store operation duration and status.

        Args:
            operation: Operation name (e.g., "sum_cost", "append")
        """
        if not self.enabled:
            yield
            return

        start_time = time.perf_counter()
        status = "success"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            duration = time.perf_counter() - start_time
            self.store_operations_total.labels(operation=operation, status=status).inc()
            self.store_operation_duration.labels(operation=operation).observe(duration)

    def record_decision(
        self, algorithm: str, reason: str, duration: Optional[float] = None
    ) -> None:
        """
        Record one admission decision.

        Args:
            algorithm: Algorithm label (``none`` when no algorithm was reached)
            reason: Decision reason value
            duration: Seconds the decision took, if measured
        """
        if not self.enabled:
            return

        self.decisions_total.labels(algorithm=algorithm, reason=reason).inc()
        if duration is not None:
            self.decision_duration.labels(algorithm=algorithm).observe(duration)

    def set_token_buckets(self, count: int) -> None:
        if not self.enabled:
            return
        self.token_buckets.set(count)

    def sample(self, name: str, **labels: str) -> Optional[float]:
        """Current value of one sample, or None if it has not been recorded."""
        return self.registry.get_sample_value(f"{self.namespace}_{name}", labels)

    def render(self) -> bytes:
        """Metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)

