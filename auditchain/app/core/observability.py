"""
OpenTelemetry Observability Module.
Provides distributed tracing for the ledger service when the optional
`tracing` extra is installed.
"""
import logging
from contextlib import contextmanager

try:
    from opentelemetry import trace
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    OPENTELEMETRY_AVAILABLE = True
except ImportError:
    OPENTELEMETRY_AVAILABLE = False

logger = logging.getLogger(__name__)


def setup_tracing(app=None):
    """Initializes OpenTelemetry tracing."""
    if not OPENTELEMETRY_AVAILABLE:
        logger.warning("OpenTelemetry SDK not installed. Tracing is disabled.")
        return

    # Spans go to the console; production deployments swap in an OTLP exporter
    provider = TracerProvider()
    processor = BatchSpanProcessor(ConsoleSpanExporter())
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    if app:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("OpenTelemetry FastAPI instrumentation enabled.")


def get_tracer(name: str):
    """Returns a tracer instance."""
    if OPENTELEMETRY_AVAILABLE:
        return trace.get_tracer(name)
    return None


@contextmanager
def traced(tracer, span_name: str, **attributes):
    """Open a span when tracing is available, otherwise do nothing."""
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(span_name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
