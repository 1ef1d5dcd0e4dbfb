"""
FastAPI application for the CarePro billing service, with monitoring,
rate limiting and a uniform error envelope.
"""
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.routing import Match
import time

from carepro.core.settings import settings
from carepro.core.exceptions import (
    carepro_exception_handler,
    http_exception_handler,
    general_exception_handler,
    CareProException
)
from carepro.core.monitoring import (
    init_sentry,
    metrics,
    increment_http_requests,
    observe_http_request_duration
)
from carepro.core.monitoring.health_checks import basic_health_check, readiness_check

# Setup structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(20),  # INFO level
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

RATE_LIMITING_ENABLED = settings.enable_rate_limiting

if RATE_LIMITING_ENABLED:
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri=settings.rate_limit_storage_uri,
        default_limits=[settings.global_rate_limit],
    )
    logger.info("Rate limiting enabled", storage_uri=settings.rate_limit_storage_uri.split("://")[0])
else:
    logger.info("Rate limiting disabled via configuration")
    limiter = None


def create_application() -> FastAPI:
    """Create and configure the billing API application."""

    app = FastAPI(
        title="CarePro Billing API",
        description="Payment settlement and recurring billing for the CarePro marketplace",
        version=settings.app_version,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url="/redoc" if settings.enable_docs else None,
    )

    if RATE_LIMITING_ENABLED and limiter:
        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
        app.add_middleware(SlowAPIMiddleware)

    # Add middleware
    setup_middleware(app)

    # Add monitoring
    setup_monitoring(app)

    # Add exception handlers
    setup_exception_handlers(app)

    # Include routers
    setup_routers(app)

    # Setup event handlers
    setup_event_handlers(app)

    return app


def setup_middleware(app: FastAPI):
    """CORS from configured origins; stricter methods and longer preflight cache in production."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"] if settings.is_production else ["*"],
        allow_headers=["Authorization", "Content-Type", "Accept", "Origin"] if settings.is_production else ["*"],
        max_age=3600 if settings.is_production else 600,
    )
    logger.info("CORS configured", allowed_origins=settings.allowed_origins)


def route_template(request: Request) -> str:
    """Templated path of the matching route; keeps label cardinality bounded."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return request.url.path


def setup_monitoring(app: FastAPI):
    """Setup Sentry, request metrics and the Prometheus endpoint."""

    init_sentry()

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        endpoint = route_template(request)
        increment_http_requests(request.method, endpoint, str(response.status_code))
        observe_http_request_duration(request.method, endpoint, duration)

        return response

    if settings.enable_metrics:
        instrumentator = Instrumentator(
            should_group_status_codes=False,
            should_ignore_untemplated=True,
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics", "/healthz", "/readyz"],
            inprogress_name="carepro_requests_inprogress",
            inprogress_labels=True,
        )
        instrumentator.instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def get_metrics():
        """Expose Prometheus metrics."""
        return metrics.get_metrics_response()


def setup_exception_handlers(app: FastAPI):
    """Render every error in the {"error": {...}} envelope."""
    app.add_exception_handler(CareProException, carepro_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


def setup_routers(app: FastAPI):
    """Setup API routers and health endpoints."""
    from carepro.api.routers import payments, subscriptions

    app.include_router(payments.router, prefix="/api")
    app.include_router(subscriptions.router, prefix="/api")

    @app.get("/healthz")
    async def health_check(request: Request):
        """Basic health check endpoint."""
        return await basic_health_check()

    @app.get("/readyz")
    async def readiness_check_endpoint(request: Request):
        """Readiness check covering the database and Redis."""
        logger.info("Readiness check requested", remote_addr=get_remote_address(request))
        return await readiness_check()

    @app.get("/")
    async def root(request: Request):
        return {
            "message": "CarePro Billing API",
            "version": settings.app_version,
            "docs": "/docs" if settings.enable_docs else None,
        }

    if RATE_LIMITING_ENABLED and limiter:
        # Probes must never be throttled
        limiter.exempt(health_check)
        limiter.exempt(readiness_check_endpoint)


def setup_event_handlers(app: FastAPI):
    """Setup application event handlers."""

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "CarePro billing API starting up",
            environment=settings.environment,
            gateway_provider=settings.gateway_provider,
        )

        for issue in settings.validate_production_config():
            logger.warning("Production configuration issue", issue=issue)

        if settings.is_development:
            from carepro.db.session import create_db_and_tables
            create_db_and_tables()
            logger.info("Development database tables created")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("CarePro billing API shutting down")


# Create application instance
app = create_application()
