"""
Span helpers for wrapping units of async work.

Every helper opens a span as a child of the active (or given) context, runs
the work with that span active, and closes the span exactly once. Errors
raised by the work are recorded on the span and re-raised unchanged; errors
raised by the tracing machinery itself are logged and never reach the caller.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from fastapi import Request
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from .telemetry import TelemetryService

logger = logging.getLogger(__name__)

T = TypeVar("T")

AttributeValue = Any
Work = Callable[[], Awaitable[T]]


class Spans:
    """Uniform span wrappers bound to a telemetry service."""

    def __init__(self, telemetry: TelemetryService, db_system: str = "sqlite"):
        self.telemetry = telemetry
        self.db_system = db_system

    async def with_span(
        self,
        name: str,
        work: Work,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Optional[Mapping[str, AttributeValue]] = None,
        context: Optional[Context] = None,
    ) -> T:
        """
        Run ``work`` inside a new span.

        Args:
            name: Span name
            work: Zero-argument coroutine function to execute
            kind: Span kind (server, client, internal)
            attributes: Initial span attributes
            context: Explicit parent context; defaults to the current one

        Returns:
            Whatever ``work`` returns
        """
        parent = context if context is not None else otel_context.get_current()

        try:
            span = self.telemetry.tracer.start_span(
                name,
                context=parent,
                kind=kind,
                attributes=dict(attributes or {}),
            )
            token = otel_context.attach(trace.set_span_in_context(span, parent))
        except Exception as e:
            logger.warning(f"Failed to open span {name}, running untraced: {e}")
            return await work()

        try:
            result = await work()
            span.set_status(Status(StatusCode.OK))
            return result
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
        finally:
            try:
                otel_context.detach(token)
            except Exception as e:
                logger.warning(f"Failed to detach context for span {name}: {e}")
            try:
                span.end()
            except Exception as e:
                logger.warning(f"Failed to end span {name}: {e}")

    async def with_database_span(self, operation: str, collection: str, work: Work) -> T:
        """Client span for a data-store call, e.g. ``database.users.find``."""
        return await self.with_span(
            f"database.{collection}.{operation}",
            work,
            kind=SpanKind.CLIENT,
            attributes={
                "db.system": self.db_system,
                "db.operation": operation,
                "db.name": collection,
            },
        )

    async def with_api_span(self, endpoint: str, work: Work) -> T:
        """Server span for an API handler body; counts the call up front."""
        try:
            self.telemetry.api_call_counter.add(1, {"endpoint": endpoint})
        except Exception as e:
            logger.warning(f"Failed to count API call for {endpoint}: {e}")

        return await self.with_span(
            f"api.{endpoint}",
            work,
            kind=SpanKind.SERVER,
            attributes={"http.route": endpoint},
        )

    @staticmethod
    def current_span() -> Span:
        return trace.get_current_span()

    def add_attributes(self, attributes: Dict[str, AttributeValue]) -> None:
        span = self.current_span()
        if span.is_recording():
            span.set_attributes(attributes)

    def record_exception(self, error: BaseException) -> None:
        span = self.current_span()
        if span.is_recording():
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR, str(error)))


def get_spans(request: Request) -> Spans:
    """FastAPI dependency returning the application's span helpers."""
    return request.app.state.spans
