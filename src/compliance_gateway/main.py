"""compliance-gateway service entry point.

Initializes the FastAPI application with:
- Primary database for applications and compliance evaluations
- Audit database for the append-only compliance audit log
- OPA client for policy evaluation
- Notification dispatcher running outside the evaluation critical path
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from compliance_gateway.adapters.notifications import LoggingNotificationService, NotificationDispatcher
from compliance_gateway.adapters.opa_client import OPAClient
from compliance_gateway.api.router import register_exception_handlers, router
from compliance_gateway.database import (
    close_databases,
    create_all,
    get_audit_session_factory,
    get_session_factory,
    init_databases,
)
from compliance_gateway.observability import configure_logging, get_logger
from compliance_gateway.settings import Settings, get_settings

logger = get_logger(__name__)

_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Initializes both database engines, the OPA client and the notification
    dispatcher on startup. Stops the dispatcher and disposes engines on
    shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    settings: Settings = app.state.settings

    # Startup: primary and audit databases
    logger.info("Initializing databases", service=settings.service_name)
    init_databases(
        database_url=settings.database_url,
        audit_db_url=settings.audit_db_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        audit_pool_size=settings.audit_db_pool_size,
        audit_max_overflow=settings.audit_db_max_overflow,
    )
    if settings.create_tables_on_startup:
        await create_all()

    # Startup: OPA client (verify connectivity)
    opa_client = OPAClient(
        opa_url=settings.opa_url,
        eval_timeout_ms=settings.policy_eval_timeout_ms,
        health_timeout_ms=settings.opa_health_timeout_ms,
    )
    if not await opa_client.health_check():
        logger.warning(
            "OPA is not reachable at startup, policy evaluation will fail until OPA is available",
            opa_url=settings.opa_url,
        )

    # Startup: notification dispatcher
    dispatcher = NotificationDispatcher(
        workers=settings.notification_workers,
        queue_size=settings.notification_queue_size,
    )
    await dispatcher.start()

    # Store shared clients on app state for dependency injection
    app.state.session_factory = get_session_factory()
    app.state.audit_session_factory = get_audit_session_factory()
    app.state.policy_engine = opa_client
    app.state.notification_service = LoggingNotificationService()
    app.state.notification_dispatcher = dispatcher

    logger.info("Compliance gateway startup complete", opa_url=settings.opa_url)

    yield

    # Shutdown
    logger.info("Shutting down compliance gateway")
    await dispatcher.stop()
    await close_databases()
    logger.info("Compliance gateway shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Optional settings override, defaults to get_settings().

    Returns:
        The configured FastAPI application.
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    application = FastAPI(title=settings.service_name, version=_VERSION, lifespan=lifespan)
    application.state.settings = settings
    register_exception_handlers(application)
    application.include_router(router, prefix="/api/v1")
    return application


app: FastAPI = create_app()
