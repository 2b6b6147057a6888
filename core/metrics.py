"""
Prometheus metrics for the provisioning service.

Counts lifecycle operations by outcome, times them, and tracks every call made
to the n8n API so dashboards can tell local failures from remote ones.
"""

from prometheus_client import Counter, Histogram, start_http_server
import time
from contextlib import contextmanager


provisioning_operations = Counter(
    'automara_provisioning_operations_total',
    'Total workflow lifecycle operations',
    ['operation', 'outcome']
)

provisioning_duration = Histogram(
    'automara_provisioning_duration_seconds',
    'Duration of workflow lifecycle operations',
    ['operation', 'outcome'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 60.0]
)

n8n_requests = Counter(
    'automara_n8n_requests_total',
    'Total requests to the n8n API',
    ['endpoint', 'status']
)


class MetricsManager:
    """Manager for Prometheus metrics with context managers for timing."""

    def __init__(self):
        self._metrics_server_started = False

    def start_metrics_server(self, port: int = 8090) -> None:
        """Start Prometheus metrics HTTP server."""
        if not self._metrics_server_started:
            start_http_server(port)
            self._metrics_server_started = True

    @contextmanager
    def time_operation(self, operation: str):
        """Context manager timing a lifecycle operation and recording its outcome."""
        start_time = time.time()

        try:
            yield
        except Exception as e:
            outcome = getattr(e, "code", "error")
            duration = time.time() - start_time
            provisioning_operations.labels(operation=operation, outcome=outcome).inc()
            provisioning_duration.labels(operation=operation, outcome=outcome).observe(duration)
            raise

        duration = time.time() - start_time
        provisioning_operations.labels(operation=operation, outcome="success").inc()
        provisioning_duration.labels(operation=operation, outcome="success").observe(duration)

    def record_n8n_request(self, endpoint: str, status: str) -> None:
        """Record request to the n8n API."""
        n8n_requests.labels(endpoint=endpoint, status=status).inc()


# Global metrics manager instance
metrics = MetricsManager()
