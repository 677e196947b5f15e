"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

from .config import settings

SERVICE_NAME = "gearbook"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Business metrics
ADMISSION_DECISIONS = Counter(
    'gearbook_admission_decisions_total',
    'Admission decisions by outcome code',
    ['outcome'],
    registry=REGISTRY
)

QUOTA_OVERRIDES = Counter(
    'gearbook_quota_overrides_total',
    'Quota rejections bypassed by an admin',
    registry=REGISTRY
)

RESERVATION_EVENTS = Counter(
    'gearbook_reservation_events_total',
    'Reservation lifecycle events',
    ['action'],
    registry=REGISTRY
)

WAITLIST_OFFERS = Counter(
    'gearbook_waitlist_offers_total',
    'Waitlist offers by lifecycle step',
    ['status'],
    registry=REGISTRY
)

TRANSFERS = Counter(
    'gearbook_transfers_total',
    'Transfer requests by final status',
    ['status', 'kind'],
    registry=REGISTRY
)

WAITLIST_ENTRIES = Gauge(
    'gearbook_waitlist_entries_active',
    'Active waitlist entries per resource',
    ['resource_id'],
    registry=REGISTRY
)


def _add_trace_context(logger, method_name, event_dict):
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict['trace_id'] = format(ctx.trace_id, '032x')
        event_dict['span_id'] = format(ctx.span_id, '016x')
    return event_dict


def setup_logging():
    """
    Route both structlog and stdlib ``logging`` through one renderer.

    Services log with ``logging.getLogger(__name__)`` and ``extra=`` dicts;
    ``ExtraAdder`` lifts those fields into the structured event, so a line
    from a service and one from a worker's structlog logger look the same.
    Request ids bound by the middleware and the active trace ids are merged
    into every record.
    """
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _add_trace_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared + [structlog.stdlib.ExtraAdder()],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    # Access lines duplicate the request logging middleware
    logging.getLogger("uvicorn.access").propagate = False


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    provider = TracerProvider(resource=_resource())
    trace.set_tracer_provider(provider)

    if settings.otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )

    return trace.get_tracer(__name__)


def setup_metrics():
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=settings.otlp_endpoint),
            export_interval_millis=60000,
        )
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine):
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_admission(outcome: str):
        ADMISSION_DECISIONS.labels(outcome=outcome).inc()

    @staticmethod
    def record_quota_override():
        QUOTA_OVERRIDES.inc()

    @staticmethod
    def record_reservation_event(action: str):
        RESERVATION_EVENTS.labels(action=action).inc()

    @staticmethod
    def record_offer(status: str, count: int = 1):
        """Record offers reaching a lifecycle step (created, accepted, declined, expired)."""
        if count:
            WAITLIST_OFFERS.labels(status=status).inc(count)

    @staticmethod
    def record_transfer(status: str, scheduled: bool):
        TRANSFERS.labels(status=status, kind="scheduled" if scheduled else "immediate").inc()

    @staticmethod
    def set_waitlist_entries(resource_id: str, count: int):
        """Set the number of active waitlist entries for a resource."""
        WAITLIST_ENTRIES.labels(resource_id=resource_id).set(count)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()


def get_logger(name: str):
    """Get a structlog logger bound to a component name."""
    return structlog.get_logger(name).bind(component=name)
