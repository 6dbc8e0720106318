"""
Shared metrics configuration for the Redis cache plugin.
"""

import time
import threading
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for a cache instance."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # A private registry keeps several caches in one process from colliding
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["service"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["service"],
            registry=self.registry
        )

        self._metrics["cache_computations_total"] = Counter(
            "cache_computations_total",
            "Total computations run on cache misses",
            ["service", "outcome"],
            registry=self.registry
        )

        self._metrics["cache_errors_total"] = Counter(
            "cache_errors_total",
            "Total backing store errors",
            ["service", "operation"],
            registry=self.registry
        )

        self._metrics["cache_in_flight"] = Gauge(
            "cache_in_flight",
            "Computations currently in flight",
            ["service"],
            registry=self.registry
        )

        self._metrics["cache_operation_duration_seconds"] = Histogram(
            "cache_operation_duration_seconds",
            "Cache operation duration in seconds",
            ["service", "operation"],
            registry=self.registry
        )

    def record_hit(self):
        self._metrics["cache_hits_total"].labels(service=self.service_name).inc()

    def record_miss(self):
        self._metrics["cache_misses_total"].labels(service=self.service_name).inc()

    def record_computation(self, outcome: str):
        """Record a finished computation, outcome is "success" or "failure"."""
        self._metrics["cache_computations_total"].labels(
            service=self.service_name,
            outcome=outcome
        ).inc()

    def record_error(self, operation: str):
        """Record a backing store error."""
        self._metrics["cache_errors_total"].labels(
            service=self.service_name,
            operation=operation
        ).inc()

    def set_in_flight(self, value: int):
        self._metrics["cache_in_flight"].labels(service=self.service_name).set(value)

    @contextmanager
    def time_operation(self, operation: str):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            self._metrics["cache_operation_duration_seconds"].labels(
                service=self.service_name,
                operation=operation
            ).observe(duration)

    def sample(self, metric_name: str, **labels) -> float:
        """Read the current value of a counter or gauge."""
        with self._lock:
            value = self.registry.get_sample_value(
                metric_name,
                {"service": self.service_name, **labels}
            )
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
