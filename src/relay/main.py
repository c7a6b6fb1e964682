"""FastAPI application factory.

Creates the app with logging and metrics middleware, the v1 API router, and a
lifespan that builds the sync pipeline onto ``app.state``, authenticates the
CRM session, and starts the expiration scheduler.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.relay.analytics.service import CustomerAnalyticsService
from src.relay.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.relay.api.v1.router import router as v1_router
from src.relay.audit.service import AuditLog
from src.relay.audit.store import InMemoryAuditStore
from src.relay.clients.crm import CRMClient, SalesforceClient
from src.relay.clients.storefront import StorefrontClient
from src.relay.config import Environment, Settings, get_settings
from src.relay.core.monitoring import MetricsMiddleware, get_metrics_response
from src.relay.events.publisher import build_publisher
from src.relay.sync.carts import CartRecoveryOrchestrator
from src.relay.sync.orders import OrderSyncOrchestrator
from src.relay.sync.resolver import EntityResolver
from src.relay.sync.scheduler import ExpirationScheduler

log = structlog.get_logger(__name__)


def build_pipeline(
    app: FastAPI,
    settings: Settings,
    crm: CRMClient | None = None,
    storefront: StorefrontClient | None = None,
) -> None:
    """Construct every pipeline component and attach it to ``app.state``."""
    config = settings.sync_config()

    crm = crm or SalesforceClient(
        login_url=settings.SALESFORCE_INSTANCE_URL,
        client_id=settings.SALESFORCE_CLIENT_ID,
        client_secret=settings.SALESFORCE_CLIENT_SECRET,
        username=settings.SALESFORCE_USERNAME,
        password=settings.SALESFORCE_PASSWORD,
        security_token=settings.SALESFORCE_SECURITY_TOKEN,
        api_version=settings.SALESFORCE_API_VERSION,
    )
    storefront = storefront or StorefrontClient(
        store_hash=settings.BIGCOMMERCE_STORE_HASH,
        access_token=settings.BIGCOMMERCE_ACCESS_TOKEN,
        api_url=settings.BIGCOMMERCE_API_URL,
    )

    audit_log = AuditLog(InMemoryAuditStore(capacity=settings.AUDIT_LOG_CAPACITY))
    publisher = None
    if config.features.platform_events:
        publisher = build_publisher(settings.EVENT_PUBLISHER, crm=crm, redis_url=settings.REDIS_URL)

    resolver = EntityResolver(crm, config)
    app.state.sync_config = config
    app.state.crm = crm
    app.state.storefront = storefront
    app.state.audit_log = audit_log
    app.state.event_publisher = publisher
    app.state.order_sync = OrderSyncOrchestrator(
        storefront,
        crm,
        config,
        audit_log,
        publisher=publisher,
        analytics=CustomerAnalyticsService(crm, config),
        resolver=resolver,
    )
    app.state.cart_recovery = CartRecoveryOrchestrator(
        storefront, crm, config, audit_log, publisher=publisher, resolver=resolver
    )
    log.info(
        "pipeline.initialized",
        publisher=type(publisher).__name__ if publisher else None,
        features=config.features.model_dump(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the pipeline on startup; stop the scheduler and publisher on shutdown."""
    settings = get_settings()
    configure_structlog(settings)

    missing = settings.missing_credentials()
    if missing:
        log.warning("config.missing_credentials", missing=missing)
    if not settings.ADMIN_API_KEY and settings.ENVIRONMENT != Environment.development:
        log.warning("config.operator_endpoints_disabled", reason="ADMIN_API_KEY not set")

    build_pipeline(app, settings)

    # CRM login is best-effort: requests re-authenticate on demand
    try:
        await app.state.crm.authenticate()
    except Exception as exc:
        log.warning("crm.startup_authentication_failed", error=str(exc))

    scheduler = ExpirationScheduler(
        app.state.cart_recovery,
        interval_minutes=settings.CART_EXPIRATION_INTERVAL_MINUTES,
        enabled=app.state.sync_config.features.cart_expiration,
    )
    try:
        scheduler.start()
    except Exception:
        log.warning("expiration_scheduler.start_failed", exc_info=True)
    app.state.expiration_scheduler = scheduler

    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    scheduler.shutdown()
    publisher = getattr(app.state, "event_publisher", None)
    if publisher is not None:
        try:
            await publisher.close()
        except Exception:
            log.warning("event_publisher.close_failed", exc_info=True)
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Commerce CRM Relay",
        version="0.1.0",
        description="Relays storefront order and abandoned cart events into the CRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/", include_in_schema=False)
    async def index() -> dict:
        """Service index."""
        return {
            "name": "commerce-crm-relay",
            "version": "0.1.0",
            "endpoints": {
                "health": "/api/v1/health",
                "orders": "/api/v1/webhooks/orders",
                "abandoned_carts": "/api/v1/webhooks/carts/abandoned",
                "general": "/api/v1/webhooks/general",
                "audit": "/api/v1/audit/logs",
                "metrics": "/metrics",
            },
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
