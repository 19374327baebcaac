"""
Shared metrics configuration for the NDC distribution gateway.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest
from typing import Dict, Any, Optional
import threading


BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Metrics collector bound to its own registry.

    Each gateway instance owns a collector, so isolated instances (tests,
    multiple credential scopes) never collide on metric registration.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up the gateway metrics."""

        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # Outbound HTTP
        self._metrics["http_requests_total"] = Counter(
            "ndc_http_requests_total",
            "Total outbound HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "ndc_http_request_duration_seconds",
            "Outbound HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Provider operations
        self._metrics["operations_total"] = Counter(
            "ndc_operations_total",
            "Total provider operations by outcome",
            ["operation", "status"],
            registry=self.registry
        )

        self._metrics["operation_duration_seconds"] = Histogram(
            "ndc_operation_duration_seconds",
            "Provider operation duration in seconds, retries included",
            ["operation"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "ndc_errors_total",
            "Total terminal errors",
            ["operation", "error_kind"],
            registry=self.registry
        )

        # Resilience
        self._metrics["breaker_transitions_total"] = Counter(
            "ndc_circuit_breaker_transitions_total",
            "Circuit breaker state transitions",
            ["breaker", "from_state", "to_state"],
            registry=self.registry
        )

        self._metrics["breaker_rejections_total"] = Counter(
            "ndc_circuit_breaker_rejections_total",
            "Calls short-circuited by an open breaker",
            ["breaker"],
            registry=self.registry
        )

        self._metrics["breaker_state"] = Gauge(
            "ndc_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["breaker"],
            registry=self.registry
        )

        self._metrics["retry_attempts_total"] = Counter(
            "ndc_retry_attempts_total",
            "Retries scheduled after a failed attempt",
            ["operation", "attempt"],
            registry=self.registry
        )

        # Tokens
        self._metrics["token_cache_events_total"] = Counter(
            "ndc_token_cache_events_total",
            "Token cache lookups and refreshes",
            ["result"],
            registry=self.registry
        )

        self._metrics["token_cache_size"] = Gauge(
            "ndc_token_cache_size",
            "Number of cached tokens",
            registry=self.registry
        )

        self._metrics["auth_requests_total"] = Counter(
            "ndc_auth_requests_total",
            "Credential exchanges against the auth endpoint",
            ["status"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def render(self) -> bytes:
        """Render the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record outbound HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_operation(self, operation: str, status: str, duration: float):
        """Record the terminal outcome of a provider operation."""
        self._metrics["operations_total"].labels(operation=operation, status=status).inc()
        self._metrics["operation_duration_seconds"].labels(operation=operation).observe(duration)

    def record_error(self, operation: str, error_kind: str):
        """Record error metrics."""
        self._metrics["errors_total"].labels(operation=operation, error_kind=error_kind).inc()

    def record_breaker_transition(self, breaker: str, from_state: str, to_state: str):
        self._metrics["breaker_transitions_total"].labels(
            breaker=breaker, from_state=from_state, to_state=to_state
        ).inc()
        self._metrics["breaker_state"].labels(breaker=breaker).set(BREAKER_STATE_VALUES[to_state])

    def record_breaker_rejection(self, breaker: str):
        self._metrics["breaker_rejections_total"].labels(breaker=breaker).inc()

    def record_retry(self, operation: str, attempt: int):
        self._metrics["retry_attempts_total"].labels(operation=operation, attempt=str(attempt)).inc()

    def record_token_event(self, result: str):
        self._metrics["token_cache_events_total"].labels(result=result).inc()

    def set_token_cache_size(self, size: int):
        with self._lock:
            self._metrics["token_cache_size"].set(size)

    def record_auth_request(self, status: str):
        self._metrics["auth_requests_total"].labels(status=status).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
