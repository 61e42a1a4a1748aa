"""
Shared metrics configuration for the learning portal access layer.
"""

from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry unless one is passed in, so several
    service instances (tests, workers) can live in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type"],
            registry=self.registry
        )

        if self.service_name == "entitlements":
            self._setup_entitlements_metrics()

    def _setup_entitlements_metrics(self):
        """Set up entitlements-specific metrics."""
        self._metrics["entitlement_decisions_total"] = Counter(
            "entitlement_decisions_total",
            "Total entitlement decisions",
            ["feature", "outcome", "reason"],
            registry=self.registry
        )

        self._metrics["entitlement_load_duration_seconds"] = Histogram(
            "entitlement_load_duration_seconds",
            "Time spent loading roles and subscriptions",
            registry=self.registry
        )

        self._metrics["provider_failures_total"] = Counter(
            "provider_failures_total",
            "Provider reads that failed closed",
            ["provider"],
            registry=self.registry
        )

        self._metrics["cache_requests_total"] = Counter(
            "cache_requests_total",
            "Provider cache lookups",
            ["kind", "result"],
            registry=self.registry
        )

        self._metrics["subscriptions_created_total"] = Counter(
            "subscriptions_created_total",
            "Subscriptions created",
            ["tier"],
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        """Record error metrics."""
        self._metrics["errors_total"].labels(error_type=error_type).inc()

    def record_decision(self, feature: str, outcome: str, reason: str):
        """Record an entitlement decision."""
        self.increment_counter("entitlement_decisions_total", feature=feature, outcome=outcome, reason=reason)

    def record_provider_failure(self, provider: str):
        """Record a provider read that was converted to an empty result."""
        self.increment_counter("provider_failures_total", provider=provider)

    def record_cache_lookup(self, kind: str, hit: bool):
        """Record a provider cache lookup."""
        self.increment_counter("cache_requests_total", kind=kind, result="hit" if hit else "miss")

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            metric = self._metrics.get(operation_name)
            if metric is not None:
                (metric.labels(**labels) if labels else metric).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            with self._lock:
                self._metrics[metric_name].labels(**labels).inc()

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read a sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
