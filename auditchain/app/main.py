"""
AuditChain - Tamper-Evident Audit Ledger

FastAPI application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auditchain.app.core.config import get_settings
from auditchain.app.core.database import async_session_maker, engine, init_models
from auditchain.app.core.logging import setup_logging, get_logger
from auditchain.app.core.observability import setup_tracing
from auditchain.app.api import audit, health
from auditchain.app.middleware.audit import SKIP_PREFIXES, RequestAuditMiddleware
from auditchain.app.middleware.trace import TracingMiddleware

settings = get_settings()

# Initialize logging
setup_logging(level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    await init_models()

    from auditchain.app.events.bus import initialize_event_bus, reset_event_bus
    bus = initialize_event_bus(maxsize=settings.event_bus_maxsize)

    from auditchain.app.services.alerting import build_dispatcher
    from auditchain.app.workers.handlers import clear_handlers, register_alert_handler
    register_alert_handler(
        build_dispatcher(settings.alert_webhook_url, timeout=settings.alert_webhook_timeout_seconds)
    )

    from auditchain.app.workers.consumer import start_event_consumer, stop_event_consumer
    consumer_task = await start_event_consumer(bus)

    from auditchain.app.services.audit_ledger import build_audit_ledger
    ledger = build_audit_ledger(async_session_maker, settings=settings, bus=bus)
    await ledger.initialize()
    app.state.audit_ledger = ledger

    yield
    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")

    app.state.audit_ledger = None
    await stop_event_consumer(consumer_task)
    clear_handlers()
    reset_event_bus()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Tamper-evident, hash-chained audit ledger with online risk scoring",
    version=settings.app_version,
    lifespan=lifespan,
)

if settings.tracing_enabled:
    setup_tracing(app)

# Add Middleware (last added runs first)
if settings.audit_http_requests:
    app.add_middleware(
        RequestAuditMiddleware,
        skip_prefixes=SKIP_PREFIXES + (f"{settings.api_prefix}/audit",),
    )
app.add_middleware(TracingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(
    audit.router,
    prefix=f"{settings.api_prefix}/audit",
    tags=["Audit Ledger"],
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Tamper-evident audit ledger",
        "docs": "/docs",
    }
