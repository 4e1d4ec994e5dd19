"""
Shared metrics configuration for the metrics relay.

One ``CollectorRegistry`` is built at startup and handed to everything that
emits or exports telemetry. prometheus_client metrics synchronise internally,
so callers never lock around ``inc``/``observe``.
"""

from typing import Dict, Any, Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    ProcessCollector,
    generate_latest,
)


class RelayMetrics:
    """Centralized metrics collector for the relay."""

    def __init__(self, service_name: str, version: str = "0.0.0",
                 registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.version = version
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up the relay's own metrics."""
        ProcessCollector(registry=self.registry)

        self._metrics["build_info"] = Info(
            "relay_build",
            "Relay build information",
            registry=self.registry
        )
        self._metrics["build_info"].info({
            "service": self.service_name,
            "version": self.version
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "relay_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "relay_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Upstream metrics
        self._metrics["upstream_responses_total"] = Counter(
            "relay_upstream_responses_total",
            "Upstream responses by status code",
            ["status_code"],
            registry=self.registry
        )

        self._metrics["upstream_failures_total"] = Counter(
            "relay_upstream_failures_total",
            "Relay attempts that never produced an upstream response",
            ["reason"],
            registry=self.registry
        )

        self._metrics["auth_rejections_total"] = Counter(
            "relay_auth_rejections_total",
            "Requests rejected by the bearer token check",
            ["reason"],
            registry=self.registry
        )

        self._metrics["metrics_push_total"] = Counter(
            "relay_metrics_push_total",
            "Metrics push attempts",
            ["outcome"],
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

    def record_upstream_response(self, status_code: int):
        self._metrics["upstream_responses_total"].labels(status_code=str(status_code)).inc()

    def record_upstream_failure(self, reason: str):
        self._metrics["upstream_failures_total"].labels(reason=reason).inc()

    def record_auth_rejection(self, reason: str):
        self._metrics["auth_rejections_total"].labels(reason=reason).inc()

    def record_push(self, success: bool):
        self._metrics["metrics_push_total"].labels(outcome="success" if success else "failure").inc()

    def render_text(self) -> Tuple[bytes, str]:
        """Render the registry in the text exposition format."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
