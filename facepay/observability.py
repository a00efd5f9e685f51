"""
Observability and monitoring setup for the FacePay engine.
"""

import asyncio
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
enrollment_counter: Optional[metrics.Counter] = None
verification_counter: Optional[metrics.Counter] = None
similarity_histogram: Optional[metrics.Histogram] = None
payment_counter: Optional[metrics.Counter] = None
reconciliation_counter: Optional[metrics.Counter] = None


def setup_observability(
    service_name: str = "facepay-engine",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global enrollment_counter, verification_counter, similarity_histogram
    global payment_counter, reconciliation_counter

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    trace_provider = TracerProvider(resource=resource)
    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    if enable_console_export:
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    metric_readers = []
    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )
    if enable_console_export:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    request_counter = meter.create_counter(
        name="http_requests_total",
        description="Total number of HTTP requests",
        unit="1"
    )
    request_duration = meter.create_histogram(
        name="http_request_duration_seconds",
        description="HTTP request duration in seconds",
        unit="s"
    )
    error_counter = meter.create_counter(
        name="http_errors_total",
        description="Total number of HTTP errors",
        unit="1"
    )
    enrollment_counter = meter.create_counter(
        name="face_enrollments_total",
        description="Total number of face enrollments",
        unit="1"
    )
    verification_counter = meter.create_counter(
        name="face_verifications_total",
        description="Total number of face verifications",
        unit="1"
    )
    similarity_histogram = meter.create_histogram(
        name="face_verification_similarity",
        description="Face verification similarity scores",
        unit="1"
    )
    payment_counter = meter.create_counter(
        name="payment_operations_total",
        description="Total number of payment authorizations, confirmations and refunds",
        unit="1"
    )
    reconciliation_counter = meter.create_counter(
        name="reconciliation_events_total",
        description="Total number of gateway events received",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app)
    # Supabase's postgrest client talks over httpx
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


@contextmanager
def _span(name: str, func: Callable):
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("function.name", func.__name__)
        span.set_attribute("function.module", func.__module__)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_attribute("success", False)
            span.set_attribute("error.type", type(e).__name__)
            span.set_attribute("error.message", str(e))
            raise
        span.set_attribute("success", True)


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)
            with _span(span_name, func):
                return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)
            with _span(span_name, func):
                return func(*args, **kwargs)

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


def record_enrollment_metrics(success: bool, processing_time: float, user_id: str) -> None:
    """
    Record metrics for face enrollment.

    Args:
        success: Whether enrollment was successful
        processing_time: Time taken for enrollment in seconds
        user_id: User ID for attribution
    """
    if enrollment_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "enrollment",
        "success": str(success).lower(),
        "user_id": user_id
    }
    enrollment_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)


def record_verification_metrics(
    success: bool,
    processing_time: float,
    similarity: Optional[float],
    user_id: str
) -> None:
    """
    Record metrics for face verification.

    Args:
        success: Whether the face matched
        processing_time: Time taken for verification in seconds
        similarity: Similarity of the closest enrolled face, if computed
        user_id: User ID for attribution
    """
    if verification_counter is None or request_duration is None:
        return

    attributes = {
        "operation": "verification",
        "success": str(success).lower(),
        "user_id": user_id
    }
    verification_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if similarity is not None and similarity_histogram is not None:
        similarity_histogram.record(similarity, {"success": str(success).lower()})


def record_payment_metrics(operation: str, status: str, currency: Optional[str] = None) -> None:
    """
    Record a payment operation outcome.

    Args:
        operation: authorize, confirm or refund
        status: Resulting record status, or the error type on failure
        currency: Payment currency, if known
    """
    if payment_counter is None:
        return

    attributes = {"operation": operation, "status": status}
    if currency:
        attributes["currency"] = currency
    payment_counter.add(1, attributes)


def record_reconciliation_metrics(event_type: str, outcome: str) -> None:
    if reconciliation_counter is None:
        return
    reconciliation_counter.add(1, {"event_type": event_type, "outcome": outcome})


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method
        path: Request path
        status_code: HTTP status code
        processing_time: Request processing time in seconds
    """
    if request_counter is None or request_duration is None or error_counter is None:
        return

    attributes = {
        "method": method,
        "path": path,
        "status_code": str(status_code)
    }
    request_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if status_code >= 400:
        error_counter.add(1, {
            **attributes,
            "error_type": "client_error" if status_code < 500 else "server_error"
        })


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if available
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
        "trace_flags": int(span_context.trace_flags)
    }


class TracingContextMiddleware:
    """
    ASGI middleware that adds tracing context to structured logs.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        trace_context = get_trace_context()
        if trace_context:
            structlog.contextvars.bind_contextvars(**trace_context)

        await self.app(scope, receive, send)
