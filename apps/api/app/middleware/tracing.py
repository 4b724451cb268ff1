"""
Trace context propagation middleware.

Extracts W3C trace context from inbound headers, wraps each request in a
server span and injects the propagation headers into the response. Tracing
is best-effort: nothing in here may change the response a client receives.
"""
import logging
import re
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from starlette.middleware.base import BaseHTTPMiddleware

from ..telemetry import TelemetryService
from .error import error_handler

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_PREFIXES = ("/_next", "/static", "/api/health", "/favicon.ico")

# Last path segment carries a file extension, e.g. /logo.svg
STATIC_FILE_RE = re.compile(r"/[^/]*\.[A-Za-z0-9]+$")


def response_ok(status_code: int) -> bool:
    """Only 2xx counts as success; 4xx and 5xx are both failures."""
    return 200 <= status_code < 300


def path_has_prefix(path: str, prefix: str) -> bool:
    """Prefix match on whole segments: /api/health covers /api/health/db, not /api/healthz."""
    base = prefix.rstrip("/")
    return path == prefix or path == base or path.startswith(base + "/")


class TraceContextMiddleware(BaseHTTPMiddleware):
    """
    Open a server span per request and propagate trace context.

    Attributes:
        telemetry: TelemetryService providing the tracer and propagator
        excluded_prefixes: Path prefixes that pass through untraced
        exclude_static_files: Skip paths that look like static files
    """

    def __init__(
        self,
        app,
        telemetry: TelemetryService,
        excluded_prefixes: Optional[Iterable[str]] = None,
        exclude_static_files: bool = True,
    ):
        super().__init__(app)
        self.telemetry = telemetry
        self.excluded_prefixes = tuple(
            DEFAULT_EXCLUDED_PREFIXES if excluded_prefixes is None else excluded_prefixes
        )
        self.exclude_static_files = exclude_static_files

        logger.info(
            f"TraceContextMiddleware initialized with {len(self.excluded_prefixes)} excluded prefixes"
        )

    def is_excluded(self, path: str) -> bool:
        if any(path_has_prefix(path, prefix) for prefix in self.excluded_prefixes):
            return True
        return self.exclude_static_files and bool(STATIC_FILE_RE.search(path))

    def extract_context(self, request: Request) -> Context:
        """Trace context from request headers; never raises."""
        try:
            return self.telemetry.extract_context(dict(request.headers))
        except Exception as e:
            logger.warning(f"Trace context extraction failed: {e}")
            return Context()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if self.is_excluded(path):
            return await call_next(request)

        opened = self._open_span(request)
        if opened is None:
            return await call_next(request)
        span, token = opened

        try:
            try:
                response = await call_next(request)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                span.set_attribute("http.status_code", 500)
                logger.error(
                    f"Traced request failed: {request.method} {path} -> {type(exc).__name__}",
                    extra={
                        "method": request.method,
                        "path": path,
                        "error_type": type(exc).__name__,
                    },
                )
                response = await error_handler(request, exc)
            else:
                self._record_response(span, response)

            self._inject_headers(response)
            return response
        finally:
            self._close_span(span, token)

    def _open_span(self, request: Request) -> Optional[tuple]:
        parent = self.extract_context(request)
        try:
            span = self.telemetry.tracer.start_span(
                f"{request.method} {request.url.path}",
                context=parent,
                kind=SpanKind.SERVER,
            )
            span.set_attributes({
                "http.method": request.method,
                "http.url": str(request.url),
                "http.target": request.url.path,
                "http.user_agent": request.headers.get("user-agent", ""),
            })
            token = otel_context.attach(trace.set_span_in_context(span, parent))
        except Exception as e:
            logger.error(f"Failed to start request span: {e}", exc_info=True)
            return None
        return span, token

    def _record_response(self, span: Span, response: Response) -> None:
        try:
            span.set_attribute("http.status_code", response.status_code)
            if response_ok(response.status_code):
                span.set_status(Status(StatusCode.OK))
            else:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
        except Exception as e:
            logger.warning(f"Failed to record response on span: {e}")

    def _inject_headers(self, response: Response) -> None:
        try:
            carrier: dict = {}
            self.telemetry.inject_context(carrier)
            for key, value in carrier.items():
                response.headers[key] = value
        except Exception as e:
            logger.warning(f"Failed to inject trace headers: {e}")

    def _close_span(self, span: Span, token: object) -> None:
        try:
            otel_context.detach(token)
        except Exception as e:
            logger.warning(f"Failed to detach trace context: {e}")
        try:
            span.end()
        except Exception as e:
            logger.warning(f"Failed to end request span: {e}")
