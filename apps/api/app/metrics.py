"""
Prometheus metrics for the Starter Kit API.
"""
import platform
import sys

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest

# Request metrics
REQUEST_COUNT = Counter(
    'starterkit_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'starterkit_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# Error metrics
ERRORS = Counter(
    'starterkit_errors_total',
    'Total number of errors',
    ['error_type', 'component']
)

SYSTEM_INFO = Info(
    'starterkit_system_info',
    'System information'
)


class MetricsCollector:
    """Collects and manages application metrics."""

    def __init__(self, version: str = '0.1.0'):
        SYSTEM_INFO.info({
            'version': version,
            'python_version': sys.version.split()[0],
            'platform': platform.platform(),
        })

    def record_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        REQUEST_COUNT.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        REQUEST_DURATION.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_error(self, error_type: str, component: str):
        """Record error metric."""
        ERRORS.labels(error_type=error_type, component=component).inc()

    def get_metrics_response(self) -> Response:
        """Get metrics as FastAPI response."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return metrics_collector
