"""
Shared metrics configuration for the Identity Federation service.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for the federation service.

    Each collector owns its registry so that building more than one service
    instance in a process (tests, workers) never double-registers a metric.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
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

        # Federation metrics
        self._metrics["key_set_fetch_total"] = Counter(
            "key_set_fetch_total",
            "Verification key set fetches",
            ["status"],
            registry=self.registry
        )
        self._metrics["token_verifications_total"] = Counter(
            "token_verifications_total",
            "Bearer token verifications",
            ["status"],
            registry=self.registry
        )
        self._metrics["token_refresh_total"] = Counter(
            "token_refresh_total",
            "Provider access token refreshes",
            ["outcome"],
            registry=self.registry
        )
        self._metrics["settings_sync_total"] = Counter(
            "settings_sync_total",
            "Organisation settings synchronizations",
            ["direction", "outcome"],
            registry=self.registry
        )
        self._metrics["suggestion_source_failures_total"] = Counter(
            "suggestion_source_failures_total",
            "Recipient suggestion sources that failed and were skipped",
            ["source"],
            registry=self.registry
        )
        self._metrics["remote_call_duration_seconds"] = Histogram(
            "remote_call_duration_seconds",
            "Identity provider call duration in seconds",
            ["operation"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def render(self) -> bytes:
        """Render the registry in the Prometheus exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
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
        self._metrics["health_check_total"].labels(status=status).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    @contextmanager
    def time_operation(self, metric_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            if metric_name in self._metrics:
                self._metrics[metric_name].labels(**labels).observe(time.perf_counter() - start_time)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
