"""
OpenTelemetry service for the Starter Kit API.

The service owns its tracer and meter providers instead of registering
global ones, so the application (and tests) construct it explicitly and
drive its lifecycle through ``start()`` / ``shutdown()``.
"""
import logging
from typing import Any, Dict, Iterable, MutableMapping, Optional

from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.metrics import Counter, Meter, NoOpMeter
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from .settings import Settings

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "starterkit"
API_CALLS_METRIC = "api.calls"


class TelemetryService:
    """Tracing and metrics backend with an explicit lifecycle."""

    def __init__(
        self,
        settings: Settings,
        span_processors: Optional[Iterable[SpanProcessor]] = None,
        metric_readers: Optional[Iterable[MetricReader]] = None,
    ):
        self.settings = settings
        self._extra_span_processors = list(span_processors or [])
        self._extra_metric_readers = list(metric_readers or [])

        self.tracer_provider: Optional[TracerProvider] = None
        self.meter_provider: Optional[MeterProvider] = None

        self._tracer: trace.Tracer = trace.NoOpTracer()
        self._meter: Meter = NoOpMeter(INSTRUMENTATION_NAME)
        self._api_call_counter: Counter = self._create_api_call_counter(self._meter)

        self.propagator = CompositePropagator(
            [TraceContextTextMapPropagator(), W3CBaggagePropagator()]
        )

    @property
    def started(self) -> bool:
        return self.tracer_provider is not None

    @property
    def tracer(self) -> trace.Tracer:
        return self._tracer

    @property
    def meter(self) -> Meter:
        return self._meter

    @property
    def api_call_counter(self) -> Counter:
        return self._api_call_counter

    def start(self) -> None:
        """Build providers and exporters. Failures leave the service in no-op mode."""
        if self.started:
            logger.warning("Telemetry already started")
            return

        if not self.settings.otel_enabled:
            logger.info("OTEL_ENABLED is false, skipping telemetry setup")
            return

        try:
            resource = self._build_resource()
            tracer_provider = TracerProvider(
                resource=resource,
                sampler=ParentBased(TraceIdRatioBased(self.settings.trace_sample_rate)),
            )
            metric_readers = list(self._extra_metric_readers)

            endpoint = self.settings.otel_exporter_otlp_endpoint
            if endpoint:
                tracer_provider.add_span_processor(
                    BatchSpanProcessor(
                        OTLPSpanExporter(
                            endpoint=endpoint,
                            insecure=self.settings.otel_exporter_insecure,
                        )
                    )
                )
                metric_readers.append(
                    PeriodicExportingMetricReader(
                        OTLPMetricExporter(
                            endpoint=endpoint,
                            insecure=self.settings.otel_exporter_insecure,
                        ),
                        export_interval_millis=self.settings.metrics_export_interval_ms,
                    )
                )
                logger.info(f"OTLP exporters configured: {endpoint}")
            else:
                logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, spans will not be exported")

            for processor in self._extra_span_processors:
                tracer_provider.add_span_processor(processor)

            meter_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        except Exception as e:
            logger.error(f"Failed to start telemetry: {e}", exc_info=True)
            return

        self.tracer_provider = tracer_provider
        self.meter_provider = meter_provider
        self._tracer = tracer_provider.get_tracer(INSTRUMENTATION_NAME, self.settings.app_version)
        self._meter = meter_provider.get_meter(INSTRUMENTATION_NAME, self.settings.app_version)
        self._api_call_counter = self._create_api_call_counter(self._meter)

        logger.info(
            f"Telemetry started for service {self.settings.otel_service_name}",
            extra={
                "service_name": self.settings.otel_service_name,
                "sample_rate": self.settings.trace_sample_rate,
            },
        )

    def shutdown(self) -> None:
        """Flush pending telemetry and release exporters."""
        if not self.started:
            return

        for name, provider in (
            ("tracer", self.tracer_provider),
            ("meter", self.meter_provider),
        ):
            try:
                provider.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down {name} provider: {e}")

        self.tracer_provider = None
        self.meter_provider = None
        self._tracer = trace.NoOpTracer()
        self._meter = NoOpMeter(INSTRUMENTATION_NAME)
        self._api_call_counter = self._create_api_call_counter(self._meter)
        logger.info("Telemetry shut down")

    def extract_context(self, headers: MutableMapping[str, str]) -> Context:
        """
        Rebuild the trace context carried by inbound headers.

        Missing or malformed headers yield an empty context so the caller
        starts a fresh trace.
        """
        try:
            return self.propagator.extract(headers, context=Context())
        except Exception as e:
            logger.warning(f"Failed to extract trace context: {e}")
            return Context()

    def inject_context(
        self,
        carrier: MutableMapping[str, str],
        context: Optional[Context] = None,
    ) -> None:
        """Write traceparent/tracestate/baggage for ``context`` into ``carrier``."""
        self.propagator.inject(carrier, context=context)

    def _build_resource(self) -> Resource:
        attributes: Dict[str, Any] = {
            "service.name": self.settings.otel_service_name,
            "service.version": self.settings.app_version,
            "deployment.environment": self.settings.environment,
        }
        return Resource.create(attributes)

    @staticmethod
    def _create_api_call_counter(meter: Meter) -> Counter:
        return meter.create_counter(
            name=API_CALLS_METRIC,
            unit="1",
            description="Number of calls to API endpoints",
        )
