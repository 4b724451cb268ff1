"""
Custom middleware for metrics collection and request tracking.
"""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from ..metrics import MetricsCollector, get_metrics_collector

logger = logging.getLogger(__name__)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    def __init__(self, app, metrics: MetricsCollector = None):
        super().__init__(app)
        self.metrics = metrics or get_metrics_collector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        endpoint = self._extract_endpoint(request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            self.metrics.record_error(error_type=type(e).__name__, component="api")
            self.metrics.record_request(
                method=request.method,
                endpoint=endpoint,
                status_code=500,
                duration=time.time() - start_time,
            )
            raise

        self.metrics.record_request(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
            duration=time.time() - start_time,
        )
        return response

    def _extract_endpoint(self, path: str) -> str:
        """Collapse /api/<resource>/<id...> to /api/<resource> to bound label cardinality."""
        if path.startswith("/api/"):
            parts = path.split("/")
            if len(parts) > 3:
                return "/".join(parts[:3])
        return path


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID to all requests."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = getattr(request.state, "request_id", "unknown")
        trace_id = _current_trace_id()

        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "trace_id": trace_id,
                "method": request.method,
                "path": request.url.path,
                "query_params": str(request.query_params),
                "client_ip": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            },
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path} -> {type(e).__name__}",
                extra={
                    "request_id": request_id,
                    "trace_id": trace_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "duration_ms": round((time.time() - start_time) * 1000, 2),
                },
                exc_info=True,
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path} -> {response.status_code}",
            extra={
                "request_id": request_id,
                "trace_id": trace_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "response_size": response.headers.get("content-length"),
            },
        )
        return response


def _current_trace_id() -> str:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return "none"
    return format(span_context.trace_id, "032x")
