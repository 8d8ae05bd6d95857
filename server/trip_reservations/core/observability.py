"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

import structlog
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

from .config import settings

SERVICE_NAME = "trip-reservations-api"

# Prometheus metrics
REGISTRY = CollectorRegistry()

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

# Ledger metrics
HOLDS_CREATED = Counter(
    'ledger_holds_created_total',
    'Total ledger holds created',
    registry=REGISTRY
)

HOLDS_RELEASED = Counter(
    'ledger_holds_released_total',
    'Total ledger holds released before use',
    registry=REGISTRY
)

HOLDS_EXPIRED = Counter(
    'ledger_holds_expired_total',
    'Total ledger holds reclaimed after expiry',
    registry=REGISTRY
)

SEATS_REMAINING = Gauge(
    'occurrence_seats_remaining',
    'Remaining seats per occurrence after the last ledger mutation',
    ['occurrence_id'],
    registry=REGISTRY
)

# Checkout metrics
CHECKOUTS = Counter(
    'checkout_sessions_total',
    'Checkout sessions by terminal outcome',
    ['outcome'],
    registry=REGISTRY
)

BOOKINGS_CONFIRMED = Counter(
    'bookings_confirmed_total',
    'Total bookings confirmed',
    registry=REGISTRY
)

BOOKINGS_REFUNDED = Counter(
    'bookings_refunded_total',
    'Total bookings refunded',
    registry=REGISTRY
)

WAITLIST_OFFERS = Counter(
    'waitlist_offers_total',
    'Waitlist entries promoted to an offer',
    registry=REGISTRY
)

GATEWAY_REQUEST_DURATION = Histogram(
    'gateway_request_duration_seconds',
    'Payment gateway request duration in seconds',
    ['operation', 'outcome'],
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    provider = TracerProvider(resource=_resource())
    if settings.otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
    trace.set_tracer_provider(provider)
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
    def record_request(method: str, endpoint: str, status_code: int, duration: float):
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)

    @staticmethod
    def record_hold_created():
        HOLDS_CREATED.inc()

    @staticmethod
    def record_hold_released():
        HOLDS_RELEASED.inc()

    @staticmethod
    def record_holds_expired(count: int = 1):
        HOLDS_EXPIRED.inc(count)

    @staticmethod
    def set_seats_remaining(occurrence_id: str, remaining: int):
        SEATS_REMAINING.labels(occurrence_id=occurrence_id).set(remaining)

    @staticmethod
    def record_checkout(outcome: str):
        """Record a checkout session reaching ``outcome`` (started, settled, failed, expired, cancelled)."""
        CHECKOUTS.labels(outcome=outcome).inc()

    @staticmethod
    def record_booking_confirmed(count: int = 1):
        BOOKINGS_CONFIRMED.inc(count)

    @staticmethod
    def record_booking_refunded():
        BOOKINGS_REFUNDED.inc()

    @staticmethod
    def record_waitlist_offer():
        WAITLIST_OFFERS.inc()

    @staticmethod
    def observe_gateway_request(operation: str, outcome: str, duration: float):
        GATEWAY_REQUEST_DURATION.labels(operation=operation, outcome=outcome).observe(duration)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()
