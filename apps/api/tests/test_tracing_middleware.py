"""
Tests for the trace context middleware: exclusions, span lifecycle,
header propagation and best-effort failure handling.
"""
from unittest.mock import MagicMock

import pytest
from opentelemetry.trace import INVALID_SPAN_CONTEXT, SpanKind, StatusCode

from apps.api.app.middleware.tracing import TraceContextMiddleware, path_has_prefix, response_ok

TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
PARENT_SPAN_ID = "b7ad6b7169203331"
TRACEPARENT = f"00-{TRACE_ID}-{PARENT_SPAN_ID}-01"


def server_spans(span_exporter):
    """Spans opened by the middleware (named '<METHOD> <path>')."""
    return [
        span for span in span_exporter.get_finished_spans()
        if span.kind == SpanKind.SERVER and not span.name.startswith("api.")
    ]


class TestExclusions:
    """Excluded paths pass through unobserved."""

    @pytest.mark.parametrize("path", [
        "/api/health",
        "/api/health/system",
        "/_next/static/chunk.js",
        "/favicon.ico",
        "/static/app.css",
        "/logo.svg",
    ])
    def test_excluded_paths_create_no_span(self, client, span_exporter, path):
        response = client.get(path)

        assert span_exporter.get_finished_spans() == ()
        assert "traceparent" not in response.headers

    def test_health_still_answers(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_is_excluded_matching(self):
        middleware = TraceContextMiddleware(MagicMock(), telemetry=MagicMock())

        assert middleware.is_excluded("/api/health")
        assert middleware.is_excluded("/images/photo.png")
        assert not middleware.is_excluded("/api/users")
        assert not middleware.is_excluded("/api/example-paginated")

    @pytest.mark.parametrize("path,prefix,expected", [
        ("/api/health", "/api/health", True),
        ("/api/health/database", "/api/health", True),
        ("/api/healthz-report", "/api/health", False),
        ("/api/health-check", "/api/health", False),
        ("/static/app.css", "/static/", True),
        ("/staticfiles", "/static", False),
    ])
    def test_prefix_matches_whole_segments(self, path, prefix, expected):
        assert path_has_prefix(path, prefix) is expected

    def test_similar_path_is_traced(self, client, span_exporter):
        """A path that only shares characters with an excluded prefix is traced."""
        response = client.get("/api/healthz-report")

        assert response.status_code == 404
        assert [span.name for span in server_spans(span_exporter)] == ["GET /api/healthz-report"]
        assert "traceparent" in response.headers

    def test_static_file_exclusion_can_be_disabled(self):
        middleware = TraceContextMiddleware(
            MagicMock(),
            telemetry=MagicMock(),
            excluded_prefixes=[],
            exclude_static_files=False,
        )

        assert not middleware.is_excluded("/images/photo.png")
        assert not middleware.is_excluded("/api/health")


class TestServerSpan:
    """Traced requests get exactly one server span."""

    def test_one_server_span_per_request(self, client, span_exporter):
        response = client.get("/api/example-paginated", headers={"user-agent": "pytest-agent"})

        assert response.status_code == 200
        spans = server_spans(span_exporter)
        assert len(spans) == 1
        span = spans[0]
        assert span.name == "GET /api/example-paginated"
        assert span.status.status_code == StatusCode.OK
        assert span.attributes["http.method"] == "GET"
        assert span.attributes["http.target"] == "/api/example-paginated"
        assert span.attributes["http.url"].endswith("/api/example-paginated")
        assert span.attributes["http.user_agent"] == "pytest-agent"
        assert span.attributes["http.status_code"] == 200

    def test_handler_spans_are_children(self, client, span_exporter, spans_named):
        client.get("/api/example-paginated")

        request_span = server_spans(span_exporter)[0]
        api_span = spans_named("api.example.paginated")[0]
        assert api_span.parent.span_id == request_span.context.span_id
        assert api_span.context.trace_id == request_span.context.trace_id

    def test_non_2xx_marks_error(self, client, span_exporter):
        """Client errors count as failures, same as server errors."""
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        span = server_spans(span_exporter)[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes["http.status_code"] == 404

    def test_handler_exception_is_recorded_and_answered(self, client, span_exporter, spans_named):
        """An unhandled handler error closes the span once and still yields a response."""
        client.app.state.settings = client.app.state.settings.model_copy(
            update={"test_telemetry_error_rate": 1.0}
        )

        response = client.get("/api/test-telemetry")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "traceparent" in response.headers

        spans = server_spans(span_exporter)
        assert len(spans) == 1
        span = spans[0]
        assert span.name == "GET /api/test-telemetry"
        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "Random test error in telemetry endpoint"
        assert [event.name for event in span.events] == ["exception"]

        api_span = spans_named("api.test-telemetry.get")[0]
        assert api_span.status.status_code == StatusCode.ERROR

    def test_response_ok_rule(self):
        assert response_ok(200)
        assert response_ok(204)
        assert not response_ok(301)
        assert not response_ok(404)
        assert not response_ok(503)


class TestPropagation:
    """Trace context flows in from request headers and out to the response."""

    def test_continues_inbound_trace(self, client, span_exporter):
        response = client.get("/api/example-paginated", headers={"traceparent": TRACEPARENT})

        span = server_spans(span_exporter)[0]
        assert span.context.trace_id == int(TRACE_ID, 16)
        assert span.parent.span_id == int(PARENT_SPAN_ID, 16)

        version, trace_id, span_id, flags = response.headers["traceparent"].split("-")
        assert trace_id == TRACE_ID
        assert span_id == format(span.context.span_id, "016x")

    def test_malformed_header_starts_new_trace(self, client, span_exporter):
        response = client.get("/api/example-paginated", headers={"traceparent": "garbage"})

        assert response.status_code == 200
        span = server_spans(span_exporter)[0]
        assert span.parent is None
        assert span.context.trace_id != int(TRACE_ID, 16)
        assert response.headers["traceparent"].split("-")[1] == format(span.context.trace_id, "032x")

    def test_baggage_is_echoed(self, client):
        response = client.get(
            "/api/example-paginated",
            headers={"traceparent": TRACEPARENT, "baggage": "userId=alice"},
        )

        assert response.headers["baggage"] == "userId=alice"

    def test_request_id_and_trace_headers_coexist(self, client):
        response = client.get("/api/example-paginated", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert "traceparent" in response.headers


class TestTracingFailures:
    """Failures in the tracing machinery never change the response."""

    def test_injection_failure_is_suppressed(self, client, telemetry, span_exporter, monkeypatch):
        monkeypatch.setattr(telemetry, "inject_context", MagicMock(side_effect=RuntimeError("inject failed")))

        response = client.get("/api/example-paginated")

        assert response.status_code == 200
        assert "traceparent" not in response.headers
        assert len(server_spans(span_exporter)) == 1

    def test_extraction_failure_is_suppressed(self, client, telemetry, span_exporter, monkeypatch):
        monkeypatch.setattr(telemetry, "extract_context", MagicMock(side_effect=RuntimeError("extract failed")))

        response = client.get("/api/example-paginated", headers={"traceparent": TRACEPARENT})

        assert response.status_code == 200
        assert server_spans(span_exporter)[0].parent is None

    def test_span_end_failure_is_suppressed(self, client, telemetry, monkeypatch):
        failing_span = MagicMock()
        failing_span.get_span_context.return_value = INVALID_SPAN_CONTEXT
        failing_span.end.side_effect = RuntimeError("end failed")
        tracer = MagicMock()
        tracer.start_span.return_value = failing_span
        monkeypatch.setattr(telemetry, "_tracer", tracer)

        response = client.get("/api/example-paginated")

        assert response.status_code == 200
        assert response.json()["meta"]["totalItems"] == 50
        assert failing_span.end.called

    def test_span_creation_failure_serves_untraced(self, client, telemetry, span_exporter, monkeypatch):
        broken_tracer = MagicMock()
        broken_tracer.start_span.side_effect = RuntimeError("tracer failed")
        monkeypatch.setattr(telemetry, "_tracer", broken_tracer)

        response = client.get("/api/example-paginated")

        assert response.status_code == 200
        assert response.json()["meta"]["currentPage"] == 1
        assert span_exporter.get_finished_spans() == ()
