import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from apps.api.app.main import create_app
from apps.api.app.settings import Settings
from apps.api.app.spans import Spans
from apps.api.app.telemetry import API_CALLS_METRIC, TelemetryService


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: per-test SQLite file, no exporters, no random errors."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        otel_exporter_otlp_endpoint=None,
        test_telemetry_error_rate=0.0,
        metrics_auth=None,
    )


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def telemetry(settings, span_exporter, metric_reader):
    service = TelemetryService(
        settings,
        span_processors=[SimpleSpanProcessor(span_exporter)],
        metric_readers=[metric_reader],
    )
    service.start()
    yield service
    service.shutdown()


@pytest.fixture
def spans(telemetry):
    return Spans(telemetry, db_system="sqlite")


@pytest.fixture
def client(settings, telemetry):
    """Test client; telemetry is read before the lifespan shuts it down."""
    app = create_app(settings, telemetry)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api_calls(metric_reader):
    """Return the cumulative api.calls value for an endpoint."""

    def _count(endpoint: str) -> int:
        data = metric_reader.get_metrics_data()
        if data is None:
            return 0
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name != API_CALLS_METRIC:
                        continue
                    for point in metric.data.data_points:
                        if point.attributes.get("endpoint") == endpoint:
                            return point.value
        return 0

    return _count


@pytest.fixture
def spans_named(span_exporter):
    """Return finished spans with the given name, in end order."""

    def _find(name: str):
        return [span for span in span_exporter.get_finished_spans() if span.name == name]

    return _find
